"""
Admin API Routes
Operator controls for quotas, shop eligibility, sync resets, feature flags
and pipeline diagnostics. Every route requires the ``ADMIN_API_KEY`` bearer.
"""
from fastapi import APIRouter, HTTPException, Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Optional
import logging
import os

from routers.dependencies import get_cache, get_ledger, get_monitor, get_storage
from routers.shops import serialize_shop, serialize_sync_log
from services.feature_flags import feature_flags
from services.quota_ledger import QuotaLedger
from services.recommendation_cache import RecommendationCache
from services.shop_eligibility import is_development_store
from services.storage import StorageService
from services.sync_monitor import SyncMonitor

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class AdminAuth:
    """Bearer-token check against ADMIN_API_KEY"""

    @staticmethod
    def verify_admin_key(credentials: Optional[HTTPAuthorizationCredentials] = Security(security)):
        expected_key = os.getenv("ADMIN_API_KEY", "admin-dev-key-change-in-production")
        if not credentials or credentials.credentials != expected_key:
            raise HTTPException(
                status_code=401,
                detail="Invalid admin API key",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return credentials.credentials


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GlobalQuotaRequest(_CamelModel):
    daily_token_quota: int = Field(..., alias="dailyTokenQuota", gt=0)


class WhitelistRequest(_CamelModel):
    is_whitelisted: bool = Field(..., alias="isWhitelisted")


class PlanNameRequest(_CamelModel):
    plan_name: str = Field(..., alias="planName", min_length=1)


class TokenQuotaRequest(_CamelModel):
    daily_token_quota: int = Field(..., alias="dailyTokenQuota", ge=0)


class SyncPermissionRequest(_CamelModel):
    is_sync_enabled: bool = Field(..., alias="isSyncEnabled")


class FlagUpdateRequest(BaseModel):
    value: bool
    shop_id: Optional[str] = None
    updated_by: str = "api"


class KillSwitchRequest(BaseModel):
    active: bool = True
    activated_by: str = "api"


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(AdminAuth.verify_admin_key)])


async def _update_shop_or_404(storage: StorageService, shop_id: str, updates: Dict[str, Any]):
    shop = await storage.update_shop(shop_id, updates)
    if shop is None:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


# Global quota

@router.get("/global-quota")
async def get_global_quota(ledger: QuotaLedger = Depends(get_ledger)) -> Dict[str, Any]:
    budget = await ledger.check_global_tokens()
    return {"success": True, **budget.to_dict()}


@router.put("/global-quota")
async def set_global_quota(request: GlobalQuotaRequest, ledger: QuotaLedger = Depends(get_ledger)) -> Dict[str, Any]:
    budget = await ledger.set_global_quota(request.daily_token_quota)
    logger.info(f"Updated global daily token quota to {request.daily_token_quota}")
    return {"success": True, **budget.to_dict()}


@router.post("/global-quota/reset")
async def reset_global_quota(ledger: QuotaLedger = Depends(get_ledger)) -> Dict[str, Any]:
    budget = await ledger.reset_global_tokens()
    return {"success": True, **budget.to_dict()}


# Shops

@router.get("/shops")
async def list_shops(
    limit: int = 100,
    offset: int = 0,
    storage: StorageService = Depends(get_storage),
) -> Dict[str, Any]:
    shops = await storage.list_shops(limit=limit, offset=offset)
    return {
        "success": True,
        "shops": [
            {**serialize_shop(shop), "tokensUsedToday": shop.tokens_used_today, "refreshCount": shop.refresh_count}
            for shop in shops
        ],
    }


@router.put("/shops/{shop_id}/whitelist")
async def update_whitelist(
    shop_id: str,
    request: WhitelistRequest,
    storage: StorageService = Depends(get_storage),
) -> Dict[str, Any]:
    shop = await _update_shop_or_404(storage, shop_id, {"is_whitelisted": request.is_whitelisted})
    logger.info(f"Updated whitelist for {shop.domain}: {request.is_whitelisted}")
    return {"success": True, "shop": serialize_shop(shop)}


@router.put("/shops/{shop_id}/plan-name")
async def update_plan_name(
    shop_id: str,
    request: PlanNameRequest,
    storage: StorageService = Depends(get_storage),
) -> Dict[str, Any]:
    dev_store = is_development_store(request.plan_name)
    shop = await _update_shop_or_404(
        storage, shop_id, {"plan_name": request.plan_name, "is_development_store": dev_store}
    )
    logger.info(f"Updated plan name for {shop.domain}: {request.plan_name} (development_store={dev_store})")
    return {"success": True, "shop": serialize_shop(shop)}


@router.put("/shops/{shop_id}/token-quota")
async def update_token_quota(
    shop_id: str,
    request: TokenQuotaRequest,
    ledger: QuotaLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    if not await ledger.set_shop_token_quota(shop_id, request.daily_token_quota):
        raise HTTPException(status_code=404, detail="Shop not found")
    return {"success": True, "shopId": shop_id, "dailyTokenQuota": request.daily_token_quota}


@router.post("/shops/{shop_id}/reset-tokens")
async def reset_shop_tokens(shop_id: str, ledger: QuotaLedger = Depends(get_ledger)) -> Dict[str, Any]:
    if not await ledger.reset_shop_tokens(shop_id):
        raise HTTPException(status_code=404, detail="Shop not found")
    return {"success": True, "shopId": shop_id}


@router.post("/reset-all-free-tokens")
async def reset_all_free_tokens(ledger: QuotaLedger = Depends(get_ledger)) -> Dict[str, Any]:
    count = await ledger.reset_all_free_tokens()
    logger.info(f"Reset token usage for {count} free shops")
    return {"success": True, "resetCount": count}


@router.put("/shops/{shop_id}/sync-permission")
async def update_sync_permission(
    shop_id: str,
    request: SyncPermissionRequest,
    storage: StorageService = Depends(get_storage),
) -> Dict[str, Any]:
    shop = await _update_shop_or_404(storage, shop_id, {"is_sync_enabled": request.is_sync_enabled})
    logger.info(f"{'Enabled' if request.is_sync_enabled else 'Disabled'} sync for {shop.domain}")
    return {"success": True, "shop": serialize_shop(shop)}


@router.post("/shops/{shop_id}/reset-sync")
async def reset_sync(
    shop_id: str,
    storage: StorageService = Depends(get_storage),
    cache: RecommendationCache = Depends(get_cache),
) -> Dict[str, Any]:
    """Delete the shop's products and recommendations and mark it never-synced."""
    if await storage.get_shop(shop_id) is None:
        raise HTTPException(status_code=404, detail="Shop not found")
    deleted = await storage.reset_shop_data(shop_id)
    cache.invalidate_tenant(shop_id)
    return {
        "success": True,
        "deletedProducts": deleted["products"],
        "deletedRecommendations": deleted["recommendations"],
    }


@router.post("/shops/{shop_id}/trigger-sync")
async def trigger_sync(shop_id: str, storage: StorageService = Depends(get_storage)) -> Dict[str, Any]:
    """Clear the initial-sync flag so the next push regenerates everything."""
    shop = await storage.get_shop(shop_id)
    if shop is None:
        raise HTTPException(status_code=404, detail="Shop not found")
    if not shop.is_sync_enabled:
        raise HTTPException(status_code=403, detail="Sync is disabled for this shop")
    shop = await storage.update_shop(shop_id, {"initial_sync_done": False})
    logger.info(f"Triggered sync for {shop.domain}")
    return {
        "success": True,
        "shop": serialize_shop(shop),
        "message": f"Sync triggered for {shop.domain}. The next catalog push will run as an initial sync.",
    }


# Diagnostics

@router.get("/syncs/stuck")
async def get_stuck_syncs(monitor: SyncMonitor = Depends(get_monitor)) -> Dict[str, Any]:
    logs = await monitor.stuck_runs()
    return {"success": True, "count": len(logs), "syncs": [serialize_sync_log(log) for log in logs]}


@router.get("/metrics")
async def get_pipeline_metrics(monitor: SyncMonitor = Depends(get_monitor)) -> Dict[str, Any]:
    return {"success": True, "metrics": monitor.metrics.get_performance_summary()}


# Feature flags

@router.get("/flags")
async def get_feature_flags() -> Dict[str, Any]:
    return feature_flags.snapshot()


@router.put("/flags/{flag_key}")
async def set_feature_flag(flag_key: str, request: FlagUpdateRequest) -> Dict[str, Any]:
    if not feature_flags.set_flag(flag_key, request.value, request.shop_id, request.updated_by):
        raise HTTPException(status_code=400, detail=f"Unknown flag: {flag_key}")
    return {"success": True, "flag_key": flag_key, "value": request.value, "shop_id": request.shop_id}


@router.post("/kill-switches/{switch_name}")
async def set_kill_switch(switch_name: str, request: KillSwitchRequest) -> Dict[str, Any]:
    if not feature_flags.set_kill_switch(switch_name, request.active, request.activated_by):
        raise HTTPException(status_code=400, detail=f"Unknown kill switch: {switch_name}")
    return {"success": True, "switch": switch_name, "active": request.active}
