"""
Observability Metrics
Sync run outcomes, rejection reasons, token spend and P50/P95 durations.
"""
from typing import Dict, List, Any, Optional
import logging
import time
from datetime import datetime, timezone
from collections import defaultdict, deque
from dataclasses import dataclass
import statistics
import threading

logger = logging.getLogger(__name__)


@dataclass
class SyncRunMetric:
    """Outcome of one finalized sync run"""
    shop_id: str
    mode: str
    status: str
    finished_at: float
    duration_ms: float
    products_synced: int
    recommendations: int
    tokens: int
    error_code: Optional[str] = None


class MetricsCollector:
    """Collects and aggregates sync pipeline metrics"""

    def __init__(self):
        # Historical metrics (rolling window)
        self.historical_metrics = deque(maxlen=1000)
        self.mode_counts = defaultdict(int)  # "mode:status" -> count
        self.rejection_reasons = defaultdict(int)

        self.counters = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "total_recommendations": 0,
            "total_tokens": 0,
            "llm_calls": 0,
            "fallback_picks": 0,
        }

        # Thread-safe lock
        self._lock = threading.Lock()

        self.performance_thresholds = {
            "max_sync_duration_ms": 15 * 60 * 1000,
            "min_success_rate": 0.95,
        }

    def record_run(self, metric: SyncRunMetric) -> None:
        with self._lock:
            self.historical_metrics.append(metric)
            self.counters["total_runs"] += 1
            if metric.status == "success":
                self.counters["successful_runs"] += 1
            else:
                self.counters["failed_runs"] += 1
                if metric.error_code:
                    self.rejection_reasons[metric.error_code] += 1
            self.counters["total_recommendations"] += metric.recommendations
            self.counters["total_tokens"] += metric.tokens
            self.mode_counts[f"{metric.mode}:{metric.status}"] += 1

        if metric.duration_ms > self.performance_thresholds["max_sync_duration_ms"]:
            logger.warning(
                f"Sync for {metric.shop_id} took {metric.duration_ms:.0f}ms "
                f"(threshold {self.performance_thresholds['max_sync_duration_ms']}ms)"
            )

    def record_generation(self, llm_calls: int, fallbacks: int) -> None:
        with self._lock:
            self.counters["llm_calls"] += llm_calls
            self.counters["fallback_picks"] += fallbacks

    def get_performance_summary(self) -> Dict[str, Any]:
        """Get overall performance summary"""
        with self._lock:
            recent_metrics = list(self.historical_metrics)[-100:]  # Last 100 runs
            counters = dict(self.counters)
            modes = dict(self.mode_counts)
            rejections = dict(sorted(self.rejection_reasons.items(), key=lambda x: x[1], reverse=True))

        if not recent_metrics:
            return {"total_runs": 0, "counters": counters}

        successful_runs = sum(1 for m in recent_metrics if m.status == "success")
        success_rate = successful_runs / len(recent_metrics)
        durations = [m.duration_ms for m in recent_metrics]

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_runs": counters["total_runs"],
            "success_rate": round(success_rate, 3),
            "recent_runs_analyzed": len(recent_metrics),
            "performance": {
                "avg_duration_ms": round(statistics.mean(durations), 2),
                "p50_duration_ms": round(statistics.median(durations), 2),
                "p95_duration_ms": round(self._percentile(durations, 95), 2),
                "max_duration_ms": round(max(durations), 2),
            },
            "runs_by_mode": modes,
            "rejection_reasons": rejections,
            "counters": counters,
            "health_status": "degraded" if success_rate < self.performance_thresholds["min_success_rate"] else "healthy",
        }

    def recent_runs(self, seconds: float = 300) -> List[SyncRunMetric]:
        cutoff = time.time() - seconds
        with self._lock:
            return [m for m in self.historical_metrics if m.finished_at >= cutoff]

    def _percentile(self, data: List[float], percentile: float) -> float:
        """Calculate percentile of data"""
        if not data:
            return 0
        sorted_data = sorted(data)
        index = (percentile / 100) * (len(sorted_data) - 1)
        if index.is_integer():
            return sorted_data[int(index)]
        lower = sorted_data[int(index)]
        upper = sorted_data[int(index) + 1]
        return lower + (upper - lower) * (index - int(index))


# Global metrics collector
metrics_collector = MetricsCollector()
