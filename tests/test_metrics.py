import time

from services.obs.metrics import MetricsCollector, SyncRunMetric


def run(status="success", mode="initial", duration_ms=100.0, error_code=None, tokens=0):
    return SyncRunMetric(
        shop_id="shop_a",
        mode=mode,
        status=status,
        finished_at=time.time(),
        duration_ms=duration_ms,
        products_synced=5 if status == "success" else 0,
        recommendations=12 if status == "success" else 0,
        tokens=tokens,
        error_code=error_code,
    )


def test_empty_summary():
    summary = MetricsCollector().get_performance_summary()
    assert summary["total_runs"] == 0


def test_record_run_counters_and_rejections():
    collector = MetricsCollector()
    collector.record_run(run(tokens=300))
    collector.record_run(run(status="failed", mode="refresh", error_code="REFRESH_LIMIT_EXCEEDED"))
    collector.record_run(run(status="failed", mode="refresh", error_code="REFRESH_LIMIT_EXCEEDED"))
    collector.record_generation(llm_calls=4, fallbacks=1)

    summary = collector.get_performance_summary()
    assert summary["total_runs"] == 3
    assert summary["success_rate"] == round(1 / 3, 3)
    assert summary["health_status"] == "degraded"
    assert summary["runs_by_mode"] == {"initial:success": 1, "refresh:failed": 2}
    assert summary["rejection_reasons"] == {"REFRESH_LIMIT_EXCEEDED": 2}
    assert summary["counters"]["total_tokens"] == 300
    assert summary["counters"]["llm_calls"] == 4
    assert summary["counters"]["fallback_picks"] == 1


def test_duration_percentiles():
    collector = MetricsCollector()
    for duration in (100, 200, 300, 400, 500):
        collector.record_run(run(duration_ms=duration))

    perf = collector.get_performance_summary()["performance"]
    assert perf["p50_duration_ms"] == 300
    assert perf["p95_duration_ms"] == 480
    assert perf["max_duration_ms"] == 500
    assert len(collector.recent_runs()) == 5
