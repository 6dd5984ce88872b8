"""
Sync Orchestrator
Drives one catalog sync from request to committed state:

    received → admitted → products persisted → diffed → generating
             → results persisted → committed → done
    (rejected / failed at any gate)

Everything that mutates products, edges, shop state or quota counters happens
inside a single ``session.begin()`` block that starts by row-locking the shop.
The read-side cache is only invalidated after that block commits, and the
audit record is finalized exactly once whatever happens.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from database import Shop
from schemas.sync_schemas import SyncRequest
from services.admission import AdmissionController, refresh_limit_error
from services.candidate_filter import CatalogItem
from services.errors import InternalSyncError, SyncPipelineError, ValidationError
from services.quota_ledger import QuotaLedger, RefreshStatus, TokenBudget, quota_ledger, refresh_status, utcnow
from services.recommendation_cache import RecommendationCache, recommendation_cache
from services.recommendation_generator import (
    GenerationResult,
    RecommendationGenerator,
    TokenUsage,
    build_generator,
)
from services.storage import StorageService, storage as default_storage
from services.sync_mode import SyncMode, resolve_sync_mode
from services.sync_monitor import SyncMonitor, sync_monitor

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    mode: SyncMode
    products: int
    new_recommendations: int
    total_recommendations: int
    refresh: RefreshStatus
    token_quota: Optional[TokenBudget] = None
    generation: GenerationResult = field(default_factory=GenerationResult)

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": True,
            "mode": self.mode.value,
            "products": self.products,
            "newRecommendations": self.new_recommendations,
            "totalRecommendations": self.total_recommendations,
            "refreshLimit": self.refresh.to_dict(),
            "canRefresh": self.refresh.can_refresh,
        }
        if self.token_quota is not None:
            payload["tokenQuota"] = self.token_quota.to_dict()
        return payload


@dataclass
class _RunState:
    products_scanned: int = 0
    products_synced: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)


def dedupe_items(request: SyncRequest) -> List[CatalogItem]:
    """One item per external id; the last occurrence wins, first-seen order is kept."""
    by_id: Dict[str, CatalogItem] = {}
    for payload in request.products:
        by_id[payload.product_id] = payload.to_item()
    return list(by_id.values())


class SyncOrchestrator:
    def __init__(
        self,
        storage: Optional[StorageService] = None,
        ledger: Optional[QuotaLedger] = None,
        monitor: Optional[SyncMonitor] = None,
        cache: Optional[RecommendationCache] = None,
        generator_factory: Callable[[Optional[str]], RecommendationGenerator] = build_generator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage or default_storage
        self.ledger = ledger or quota_ledger
        self.monitor = monitor or sync_monitor
        self.cache = cache if cache is not None else recommendation_cache
        self.generator_factory = generator_factory
        self.admission = AdmissionController(self.ledger)
        self._clock = clock

    async def run(self, shop: Shop, request: SyncRequest) -> SyncOutcome:
        now = self._clock()
        mode = resolve_sync_mode(shop.initial_sync_done, request.mode, request.regenerate)
        state = _RunState(products_scanned=len(request.products))
        run = await self.monitor.start(shop.id, mode.value)
        logger.info(
            f"Sync request for {shop.domain} ({shop.id}): {len(request.products)} products, "
            f"hint={request.mode}, regenerate={request.regenerate}, mode={mode.value}"
        )

        try:
            items = dedupe_items(request)
            if not items:
                raise ValidationError("Products required")
            await self.admission.admit(shop, mode, now)
        except SyncPipelineError as exc:
            logger.warning(f"Sync rejected for {shop.id}: {exc.code} {exc.message}")
            await run.fail(exc, products_scanned=state.products_scanned)
            raise
        except Exception as exc:
            logger.error(f"Sync admission failed for {shop.id}: {exc}", exc_info=True)
            await run.fail(exc, products_scanned=state.products_scanned)
            raise InternalSyncError() from exc

        try:
            outcome = await self._run_unit_of_work(shop, mode, items, now, state)
        except SyncPipelineError as exc:
            await run.fail(exc, products_scanned=state.products_scanned, usage=state.usage)
            raise
        except asyncio.CancelledError as exc:
            await run.fail(exc, products_scanned=state.products_scanned, usage=state.usage)
            raise
        except Exception as exc:
            logger.error(f"Sync failed for {shop.id}; unit of work rolled back: {exc}", exc_info=True)
            await run.fail(exc, products_scanned=state.products_scanned, usage=state.usage)
            raise InternalSyncError() from exc

        await run.succeed(
            products_scanned=state.products_scanned,
            products_synced=outcome.products,
            recommendations=outcome.new_recommendations,
            usage=outcome.generation.usage,
        )
        return outcome

    async def _run_unit_of_work(
        self,
        shop: Shop,
        mode: SyncMode,
        items: List[CatalogItem],
        now: datetime,
        state: _RunState,
    ) -> SyncOutcome:
        refresh_cycle: Optional[str] = None

        async with self.storage.get_session() as session:
            async with session.begin():
                locked = await self.storage.lock_shop(session, shop.id)
                if locked is None:
                    raise LookupError(f"Shop {shop.id} disappeared during sync")

                if mode is SyncMode.REFRESH:
                    # Admission read the counter without a lock; re-check under it
                    status = refresh_status(locked, now, self.ledger.settings)
                    if not status.can_refresh:
                        raise refresh_limit_error(status, locked.plan)
                    refresh_cycle = status.cycle

                id_map = await self.storage.upsert_products(session, shop.id, items)
                state.products_synced = len(id_map)

                if mode is SyncMode.REFRESH:
                    removed = await self.storage.delete_recommendations(shop.id, session=session)
                    logger.info(f"Refresh for {shop.id}: removed {removed} existing recommendations")
                    targets = items
                elif mode is SyncMode.INCREMENTAL:
                    with_edges = await self.storage.source_ids_with_recommendations(
                        session, shop.id, list(id_map.values())
                    )
                    targets = [item for item in items if id_map.get(item.product_id) not in with_edges]
                else:
                    targets = items
                logger.info(f"{mode.value} sync for {shop.id}: {len(targets)}/{len(items)} products need recommendations")

                generation = GenerationResult()
                if targets:
                    generator = self.generator_factory(shop.id)
                    generation = await generator.generate(targets, items)
                    state.usage = generation.usage
                    self.monitor.metrics.record_generation(generation.llm_calls, generation.fallbacks)

                edges = [
                    (id_map[edge.source_id], id_map[edge.target_id], edge.reason)
                    for edge in generation.edges
                    if edge.source_id in id_map and edge.target_id in id_map
                ]
                affected = await self.storage.upsert_recommendations(session, shop.id, edges)

                product_count = await self.storage.count_products(shop.id, session=session)
                await self.storage.update_shop_sync_state(
                    session,
                    shop.id,
                    product_count=product_count,
                    mark_initial_done=mode is SyncMode.INITIAL,
                    stamp_refresh=mode.regenerates_all,
                    now=now,
                )
                if refresh_cycle is not None:
                    await self.ledger.increment_refresh(session, shop.id, refresh_cycle)

                is_free = (locked.plan or "free") == "free"
                if is_free:
                    await self.ledger.debit_tokens(session, shop.id, generation.usage.total_tokens, now)

                total = await self.storage.count_recommendations(shop.id, session=session)
                # Response figures are read before commit; nothing after it may fail the run
                locked = await self.storage.lock_shop(session, shop.id) or locked
                refresh = refresh_status(locked, now, self.ledger.settings)
                token_quota = await self.ledger.global_budget(session, now) if is_free else None

        self.cache.invalidate_tenant(shop.id)
        return SyncOutcome(
            mode=mode,
            products=state.products_synced,
            new_recommendations=affected,
            total_recommendations=total,
            refresh=refresh,
            token_quota=token_quota,
            generation=generation,
        )


sync_orchestrator = SyncOrchestrator()
