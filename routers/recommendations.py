"""
Recommendations Router
Read side of the pipeline: per-product lookups (cached, counted against the
plan's daily API limit), shop-wide listing, and catalog resets.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from database import Shop
from routers.dependencies import get_cache, get_current_shop, get_ledger, get_storage
from schemas.sync_schemas import SHOPIFY_PRODUCT_GID_PREFIX, normalize_product_id
from services.feature_flags import feature_flags
from services.quota_ledger import QuotaLedger
from services.recommendation_cache import RecommendationCache
from services.storage import StorageService
from settings import sanitize_shop_domain

logger = logging.getLogger(__name__)
router = APIRouter()


def _ensure_query_api_enabled(shop_id: Optional[str]) -> None:
    if not feature_flags.get_flag("api.recommendations", shop_id, default=True):
        raise HTTPException(status_code=503, detail="Recommendations API is temporarily disabled")


async def _lookup(
    storage: StorageService,
    cache: RecommendationCache,
    shop_id: str,
    product_ref: str,
    limit: int,
    cache_ref: str,
) -> Dict[str, Any]:
    cached = cache.get(shop_id, cache_ref, limit)
    if cached is not None:
        return cached
    recs = await storage.find_recommendations(shop_id, product_ref, limit)
    data = {"productId": product_ref, "recommendations": recs or []}
    cache.put(shop_id, cache_ref, limit, data)
    return data


@router.get("/recommendations/{product_id}")
async def get_product_recommendations(
    product_id: str,
    response: Response,
    limit: int = Query(3, ge=1, le=10),
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
    ledger: QuotaLedger = Depends(get_ledger),
    cache: RecommendationCache = Depends(get_cache),
):
    """Recommendations for one product, looked up by external id or handle."""
    _ensure_query_api_enabled(shop.id)
    usage = await ledger.consume_api_call(shop)
    response.headers.update(usage.headers())

    product_ref = normalize_product_id(product_id)
    return await _lookup(storage, cache, shop.id, product_ref, limit, product_ref)


@router.get("/public/recommendations/{shop_domain}/{product_id}")
async def get_public_recommendations(
    shop_domain: str,
    product_id: str,
    response: Response,
    limit: int = Query(3, ge=1, le=10),
    storage: StorageService = Depends(get_storage),
    ledger: QuotaLedger = Depends(get_ledger),
    cache: RecommendationCache = Depends(get_cache),
):
    """Storefront variant keyed by shop domain instead of an API key."""
    response.headers["Access-Control-Allow-Origin"] = "*"
    domain = sanitize_shop_domain(shop_domain)
    shop = await storage.get_shop_by_domain(domain) if domain else None
    if shop is None:
        raise HTTPException(status_code=404, detail="Shop not found")

    _ensure_query_api_enabled(shop.id)
    usage = await ledger.consume_api_call(shop)
    response.headers.update(usage.headers())

    product_ref = normalize_product_id(product_id)
    data = await _lookup(storage, cache, shop.id, product_ref, limit, f"public:{product_ref}")
    return {
        "success": True,
        "productId": product_ref,
        "shop": shop.domain,
        "count": len(data["recommendations"]),
        "recommendations": [
            {
                "id": f"{SHOPIFY_PRODUCT_GID_PREFIX}{rec['id']}",
                "numericId": rec["id"],
                "handle": rec["handle"],
                "title": rec["title"],
                "price": rec["price"],
                "image": rec["image"],
                "reasoning": rec["reason"],
            }
            for rec in data["recommendations"]
        ],
    }


@router.get("/recommendations")
async def list_recommendations(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
):
    """Every stored edge for the calling shop, newest first."""
    recs = await storage.list_recommendations(shop.id, limit=limit, offset=offset)
    return {
        "shop": shop.domain,
        "stats": {
            "products": await storage.count_products(shop.id),
            "recommendations": await storage.count_recommendations(shop.id),
        },
        "recommendations": recs,
        "pagination": {"limit": limit, "offset": offset, "returned": len(recs)},
    }


@router.delete("/recommendations")
async def delete_recommendations(
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
    cache: RecommendationCache = Depends(get_cache),
):
    """Drop the shop's recommendations and products; the next sync starts over."""
    deleted = await storage.reset_shop_data(shop.id)
    cache.invalidate_tenant(shop.id)
    logger.info(f"Deleted recommendations for {shop.domain}: {deleted}")
    return {
        "success": True,
        "deletedProducts": deleted["products"],
        "deletedRecommendations": deleted["recommendations"],
    }


@router.delete("/products")
async def delete_products(
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
    cache: RecommendationCache = Depends(get_cache),
):
    deleted = await storage.reset_shop_data(shop.id)
    cache.invalidate_tenant(shop.id)
    logger.info(f"Deleted catalog for {shop.domain}: {deleted}")
    return {"success": True, "deleted": deleted}
