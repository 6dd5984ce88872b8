"""
Shared FastAPI dependencies: shop authentication and service providers.
Tests swap the providers through ``app.dependency_overrides``.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from database import Shop
from services.quota_ledger import QuotaLedger, quota_ledger
from services.recommendation_cache import RecommendationCache, recommendation_cache
from services.storage import StorageService, storage
from services.sync_monitor import SyncMonitor, sync_monitor
from services.sync_orchestrator import SyncOrchestrator, sync_orchestrator


def get_storage() -> StorageService:
    return storage


def get_ledger() -> QuotaLedger:
    return quota_ledger


def get_cache() -> RecommendationCache:
    return recommendation_cache


def get_monitor() -> SyncMonitor:
    return sync_monitor


def get_orchestrator() -> SyncOrchestrator:
    return sync_orchestrator


async def get_current_shop(
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    storage: StorageService = Depends(get_storage),
) -> Shop:
    """Resolve the calling shop from its ``x-api-key`` header."""
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing x-api-key header")
    shop = await storage.get_shop_by_api_key(x_api_key)
    if shop is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return shop
