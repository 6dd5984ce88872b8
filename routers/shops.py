"""
Shops Router
Registration, plan changes and sync status for the calling shop.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from database import Shop, SyncLog
from routers.dependencies import get_cache, get_current_shop, get_ledger, get_monitor, get_storage
from services.errors import DevelopmentStoreError, ValidationError
from services.quota_ledger import (
    QuotaLedger,
    as_utc,
    next_utc_midnight,
    refresh_status,
    utcnow,
)
from services.recommendation_cache import RecommendationCache
from services.shop_eligibility import is_development_store
from services.storage import StorageService
from services.sync_monitor import SyncMonitor
from settings import normalize_plan, sanitize_shop_domain

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/shops")

DEV_STORE_MESSAGE = (
    "Development stores are not eligible for the free plan. Please upgrade to a paid "
    "Shopify plan or contact support for whitelist access."
)


class RegisterShopRequest(BaseModel):
    domain: str
    plan_name: Optional[str] = Field(None, alias="planName")

    model_config = ConfigDict(populate_by_name=True)


class UpdatePlanRequest(BaseModel):
    plan: str
    subscription_started_at: Optional[datetime] = Field(None, alias="subscriptionStartedAt")

    model_config = ConfigDict(populate_by_name=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def serialize_shop(shop: Shop) -> Dict[str, Any]:
    return {
        "id": shop.id,
        "domain": shop.domain,
        "plan": shop.plan,
        "planName": shop.plan_name,
        "initialSyncDone": shop.initial_sync_done,
        "lastRefreshAt": _iso(shop.last_refresh_at),
        "productCount": shop.product_count,
        "subscriptionStartedAt": _iso(shop.subscription_started_at),
        "isSyncEnabled": shop.is_sync_enabled,
        "isDevelopmentStore": shop.is_development_store,
        "isWhitelisted": shop.is_whitelisted,
        "dailyTokenQuota": shop.daily_token_quota,
    }


def serialize_sync_log(log: SyncLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "mode": log.mode,
        "status": log.status,
        "startedAt": _iso(log.started_at),
        "completedAt": _iso(log.completed_at),
        "durationMs": log.duration_ms,
        "productsScanned": log.products_scanned,
        "productsSynced": log.products_synced,
        "recommendationsGenerated": log.recommendations_generated,
        "tokensUsed": log.tokens_used,
        "estimatedCost": log.estimated_cost,
        "errorCode": log.error_code,
        "errorMessage": log.error_message,
    }


@router.post("/register")
async def register_shop(
    request: RegisterShopRequest,
    storage: StorageService = Depends(get_storage),
):
    """Register a shop (or refresh its plan name) and hand back its API key."""
    domain = sanitize_shop_domain(request.domain)
    if not domain:
        raise ValidationError("Domain required")

    existing = await storage.get_shop_by_domain(domain)
    if existing is None and is_development_store(request.plan_name):
        logger.info(f"Refused registration of development store {domain} (plan_name={request.plan_name})")
        raise DevelopmentStoreError(
            DEV_STORE_MESSAGE,
            details={"isDevelopmentStore": True, "isWhitelisted": False, "requiresWhitelist": True},
        )

    shop, created = await storage.register_shop(domain, request.plan_name)
    if shop.is_development_store and not shop.is_whitelisted:
        raise DevelopmentStoreError(
            DEV_STORE_MESSAGE,
            details={"isDevelopmentStore": True, "isWhitelisted": False, "requiresWhitelist": True},
        )

    return {
        "success": True,
        "apiKey": shop.api_key,
        "shopId": shop.id,
        "isNew": created,
        "message": "Shop registered successfully" if created else "Shop already registered",
        "isDevelopmentStore": shop.is_development_store,
        "isWhitelisted": shop.is_whitelisted,
    }


@router.get("/me")
async def get_me(shop: Shop = Depends(get_current_shop)):
    return {"success": True, "shop": serialize_shop(shop)}


@router.get("/sync-status")
async def get_sync_status(
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
    ledger: QuotaLedger = Depends(get_ledger),
    monitor: SyncMonitor = Depends(get_monitor),
):
    """Counts, refresh allowance, API usage and (free tier) token budget."""
    now = utcnow()
    status = refresh_status(shop, now, ledger.settings)
    syncing = await monitor.is_syncing(shop.id, now)

    api_limit = ledger.settings.api_limit(shop.plan)
    api_used = (shop.api_calls_today or 0) if shop.api_calls_date == now.date() else 0

    token_quota = None
    if shop.plan == "free":
        token_quota = (await ledger.check_global_tokens(now)).to_dict()

    return {
        "success": True,
        "syncStatus": {
            "initialSyncDone": shop.initial_sync_done,
            "lastRefreshAt": _iso(shop.last_refresh_at),
            "productCount": await storage.count_products(shop.id),
            "recommendationCount": await storage.count_recommendations(shop.id),
            "plan": shop.plan,
            "isSyncing": syncing,
            "refreshLimit": {
                **status.to_dict(),
                "canRefresh": status.can_refresh and not syncing,
            },
            "apiUsage": {
                "used": api_used,
                "limit": api_limit,
                "remaining": max(0, api_limit - api_used),
                "resetsAt": next_utc_midnight(now).isoformat(),
            },
            "tokenQuota": token_quota,
        },
    }


@router.put("/plan")
async def update_plan(
    request: UpdatePlanRequest,
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
    cache: RecommendationCache = Depends(get_cache),
):
    """Switch plan tier. Upgrading off the free tier restarts the refresh counter."""
    plan = normalize_plan(request.plan)
    if plan is None:
        raise ValidationError(f"Unknown plan: {request.plan}", details={"allowed": ["free", "pro", "max"]})

    updates: Dict[str, Any] = {"plan": plan}
    if request.subscription_started_at is not None:
        updates["subscription_started_at"] = as_utc(request.subscription_started_at)
    if shop.plan == "free" and plan != "free":
        updates["refresh_count"] = 0
        updates["refresh_cycle"] = None
        logger.info(f"Resetting refresh count for {shop.domain}: {shop.plan} -> {plan}")

    updated = await storage.update_shop(shop.id, updates)
    cache.invalidate_tenant(shop.id)
    logger.info(f"Plan updated for {shop.domain}: {shop.plan} -> {plan}")
    return {"success": True, "shop": serialize_shop(updated)}


@router.get("/sync-logs")
async def get_sync_logs(
    limit: int = Query(20, ge=1, le=100),
    shop: Shop = Depends(get_current_shop),
    storage: StorageService = Depends(get_storage),
):
    logs = await storage.list_sync_logs(shop.id, limit=limit)
    return {"success": True, "logs": [serialize_sync_log(log) for log in logs]}
