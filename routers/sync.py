"""
Sync Router
Accepts catalog pushes from the storefront app and runs them through the
sync orchestrator. Pipeline errors propagate to the handler in ``main.py``.
"""
import logging

from fastapi import APIRouter, Depends

from database import Shop
from routers.dependencies import get_current_shop, get_orchestrator
from schemas.sync_schemas import SyncRequest, SyncResponse
from services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/products/sync", response_model=SyncResponse, response_model_exclude_none=True)
async def sync_products(
    request: SyncRequest,
    shop: Shop = Depends(get_current_shop),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Persist the posted catalog and generate recommendations for it."""
    outcome = await orchestrator.run(shop, request)
    return outcome.to_response()
