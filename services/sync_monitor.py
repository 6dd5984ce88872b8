"""
Sync Monitor
Append-only audit trail for sync runs. Each run gets one ``sync_logs`` row
created as ``started`` and moved exactly once to ``success`` or ``failed``.
Audit writes never break a sync: failures are logged and swallowed here.
"""
from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from database import SyncLog
from services.errors import SyncPipelineError
from services.obs.metrics import MetricsCollector, SyncRunMetric, metrics_collector
from services.recommendation_generator import TokenUsage
from services.storage import StorageService, storage as default_storage
from settings import PipelineSettings, load_pipeline_settings

logger = logging.getLogger(__name__)


def estimate_cost(usage: TokenUsage, settings: Optional[PipelineSettings] = None) -> float:
    """Prompt and completion tokens priced per million."""
    settings = settings or load_pipeline_settings()
    cost = (
        usage.prompt_tokens / 1_000_000 * settings.input_cost_per_million
        + usage.completion_tokens / 1_000_000 * settings.output_cost_per_million
    )
    return round(cost, 6)


class SyncRun:
    """Handle for one in-flight audit record."""

    def __init__(self, monitor: "SyncMonitor", shop_id: str, mode: str, log_id: Optional[str]):
        self._monitor = monitor
        self.shop_id = shop_id
        self.mode = mode
        self.log_id = log_id
        self.status = "started"
        self._started = time.monotonic()

    @property
    def finalized(self) -> bool:
        return self.status != "started"

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    async def succeed(
        self,
        *,
        products_scanned: int,
        products_synced: int,
        recommendations: int,
        usage: TokenUsage,
    ) -> None:
        if self.finalized:
            return
        self.status = "success"
        await self._monitor._finalize(
            self,
            status="success",
            products_scanned=products_scanned,
            products_synced=products_synced,
            recommendations=recommendations,
            usage=usage,
        )

    async def fail(
        self,
        error: BaseException,
        *,
        products_scanned: int = 0,
        usage: Optional[TokenUsage] = None,
    ) -> None:
        if self.finalized:
            return
        self.status = "failed"
        await self._monitor._finalize(
            self,
            status="failed",
            products_scanned=products_scanned,
            products_synced=0,
            recommendations=0,
            usage=usage or TokenUsage(),
            error=error,
        )


class SyncMonitor:
    def __init__(
        self,
        storage: Optional[StorageService] = None,
        metrics: Optional[MetricsCollector] = None,
        settings: Optional[PipelineSettings] = None,
    ):
        self.storage = storage or default_storage
        self.metrics = metrics or metrics_collector
        self._settings = settings

    @property
    def settings(self) -> PipelineSettings:
        return self._settings or load_pipeline_settings()

    async def start(self, shop_id: str, mode: str) -> SyncRun:
        log_id = None
        try:
            log = await self.storage.create_sync_log(shop_id, mode)
            log_id = log.id
        except Exception as e:
            logger.error(f"Could not open sync log for {shop_id}: {e}", exc_info=True)
        logger.info(f"Sync started for {shop_id} (mode={mode}, log={log_id})")
        return SyncRun(self, shop_id, mode, log_id)

    async def _finalize(
        self,
        run: SyncRun,
        *,
        status: str,
        products_scanned: int,
        products_synced: int,
        recommendations: int,
        usage: TokenUsage,
        error: Optional[BaseException] = None,
    ) -> None:
        duration_ms = run.elapsed_ms()
        values = {
            "status": status,
            "mode": run.mode,
            "completed_at": datetime.now(timezone.utc),
            "duration_ms": duration_ms,
            "products_scanned": products_scanned,
            "products_synced": products_synced,
            "recommendations_generated": recommendations,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "tokens_used": usage.total_tokens,
            "estimated_cost": estimate_cost(usage, self.settings),
        }
        error_code = None
        if error is not None:
            error_code = error.code if isinstance(error, SyncPipelineError) else "INTERNAL_ERROR"
            values["error_code"] = error_code
            values["error_message"] = str(error)[:1000]
            if not isinstance(error, SyncPipelineError) or error.status_code >= 500:
                values["error_stack"] = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )[:4000]

        if run.log_id:
            try:
                await self.storage.finalize_sync_log(run.log_id, values)
            except Exception as e:
                logger.error(f"Could not finalize sync log {run.log_id}: {e}", exc_info=True)

        self.metrics.record_run(SyncRunMetric(
            shop_id=run.shop_id,
            mode=run.mode,
            status=status,
            finished_at=time.time(),
            duration_ms=duration_ms,
            products_synced=products_synced,
            recommendations=recommendations,
            tokens=usage.total_tokens,
            error_code=error_code,
        ))
        log = logger.info if status == "success" else logger.warning
        log(
            f"Sync {status} for {run.shop_id} (mode={run.mode}, products={products_synced}, "
            f"recommendations={recommendations}, tokens={usage.total_tokens}, "
            f"duration={duration_ms}ms{', error=' + error_code if error_code else ''})"
        )

    async def stuck_runs(self, now: Optional[datetime] = None) -> List[SyncLog]:
        """Runs still ``started`` past the stuck timeout."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.stuck_after_s)
        return await self.storage.find_started_sync_logs(started_before=cutoff)

    async def is_syncing(self, shop_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.stuck_after_s)
        running = await self.storage.find_started_sync_logs(started_after=cutoff, shop_id=shop_id)
        return bool(running)


sync_monitor = SyncMonitor()
