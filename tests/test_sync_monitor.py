from datetime import datetime, timedelta, timezone

from services.errors import InternalSyncError, TokenQuotaExceededError
from services.recommendation_generator import TokenUsage
from services.sync_monitor import estimate_cost


def test_estimate_cost_prices_per_million(settings):
    usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=500_000, total_tokens=1_500_000)
    assert estimate_cost(usage, settings) == 3.5
    assert estimate_cost(TokenUsage(), settings) == 0.0


async def test_successful_run_is_finalized_once(storage, monitor, metrics, make_shop):
    shop = await make_shop()
    run = await monitor.start(shop.id, "initial")
    usage = TokenUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120)

    await run.succeed(products_scanned=5, products_synced=5, recommendations=12, usage=usage)
    await run.fail(RuntimeError("late"))

    log = await storage.get_sync_log(run.log_id)
    assert log.status == "success"
    assert log.products_synced == 5
    assert log.recommendations_generated == 12
    assert log.tokens_used == 120
    assert log.error_code is None
    assert log.completed_at is not None
    assert metrics.counters["total_runs"] == 1
    assert metrics.counters["successful_runs"] == 1


async def test_failed_run_records_error_code(storage, monitor, metrics, make_shop):
    shop = await make_shop()
    run = await monitor.start(shop.id, "incremental")
    await run.fail(TokenQuotaExceededError("Daily token quota exceeded"), products_scanned=3)

    log = await storage.get_sync_log(run.log_id)
    assert log.status == "failed"
    assert log.error_code == "TOKEN_QUOTA_EXCEEDED"
    assert log.products_scanned == 3
    assert log.error_stack is None
    assert metrics.rejection_reasons["TOKEN_QUOTA_EXCEEDED"] == 1


async def test_internal_failures_keep_a_stack(storage, monitor, make_shop):
    shop = await make_shop()
    run = await monitor.start(shop.id, "refresh")
    try:
        raise ValueError("bad row")
    except ValueError as exc:
        await run.fail(exc)

    log = await storage.get_sync_log(run.log_id)
    assert log.error_code == "INTERNAL_ERROR"
    assert "ValueError" in log.error_stack

    other = await monitor.start(shop.id, "refresh")
    await other.fail(InternalSyncError())
    assert (await storage.get_sync_log(other.log_id)).error_code == "INTERNAL_ERROR"


async def test_stuck_and_in_flight_runs(storage, monitor, make_shop):
    shop = await make_shop()
    run = await monitor.start(shop.id, "initial")
    now = datetime.now(timezone.utc)

    assert await monitor.is_syncing(shop.id, now)
    assert await monitor.stuck_runs(now) == []

    later = now + timedelta(hours=1)
    assert [log.id for log in await monitor.stuck_runs(later)] == [run.log_id]
    assert not await monitor.is_syncing(shop.id, later)

    await run.succeed(products_scanned=0, products_synced=0, recommendations=0, usage=TokenUsage())
    assert await monitor.stuck_runs(later) == []
