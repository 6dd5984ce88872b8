"""
Centralized configuration for shop scoping and the sync pipeline.

Environment variables:
    GLOBAL_DAILY_TOKEN_QUOTA       → shared daily token budget for free-tier shops
    SHOP_DAILY_TOKEN_QUOTA         → default per-shop daily token budget
    REFRESH_LIMIT_FREE/PRO/MAX     → refreshes allowed per billing cycle
    API_LIMIT_FREE/PRO/MAX         → recommendation queries allowed per day
    RECOMMENDATION_CACHE_TTL_S     → read-side cache time-to-live
    CACHE_SWEEP_INTERVAL_S         → background eviction interval
    CANDIDATE_LIMIT                → candidates handed to the generator per product
    LLM_CALL_DELAY_S               → pause between live generator calls
    SYNC_GENERATION_DEADLINE_S     → budget for live calls in one sync run
    LLM_INPUT_COST_PER_MILLION     → cost per million prompt tokens
    LLM_OUTPUT_COST_PER_MILLION    → cost per million completion tokens
    SYNC_STUCK_AFTER_S             → age after which a started run counts as stuck
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PLANS: tuple[str, ...] = ("free", "pro", "max")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid int for %s=%s; falling back to %s", name, value, default)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid float for %s=%s; falling back to %s", name, value, default)
        return default


@dataclass(frozen=True)
class PipelineSettings:
    """Resolved limits and timings for the sync pipeline."""

    global_daily_token_quota: int
    shop_daily_token_quota: int
    refresh_limits: Dict[str, int] = field(default_factory=dict)
    api_limits: Dict[str, int] = field(default_factory=dict)
    cache_ttl_s: float = 300.0
    cache_sweep_interval_s: float = 60.0
    candidate_limit: int = 20
    llm_call_delay_s: float = 0.2
    generation_deadline_s: float = 1800.0
    input_cost_per_million: float = 2.0
    output_cost_per_million: float = 3.0
    stuck_after_s: float = 2100.0

    def refresh_limit(self, plan: Optional[str]) -> int:
        return self.refresh_limits.get(plan or "free", self.refresh_limits.get("free", 0))

    def api_limit(self, plan: Optional[str]) -> int:
        return self.api_limits.get(plan or "free", self.api_limits.get("free", 0))


@lru_cache(maxsize=1)
def load_pipeline_settings() -> PipelineSettings:
    """Load and cache pipeline configuration from environment variables."""

    return PipelineSettings(
        global_daily_token_quota=_env_int("GLOBAL_DAILY_TOKEN_QUOTA", 10_000_000),
        shop_daily_token_quota=_env_int("SHOP_DAILY_TOKEN_QUOTA", 10_000_000),
        refresh_limits={
            "free": _env_int("REFRESH_LIMIT_FREE", 0),
            "pro": _env_int("REFRESH_LIMIT_PRO", 3),
            "max": _env_int("REFRESH_LIMIT_MAX", 10),
        },
        api_limits={
            "free": _env_int("API_LIMIT_FREE", 5_000),
            "pro": _env_int("API_LIMIT_PRO", 50_000),
            "max": _env_int("API_LIMIT_MAX", 50_000),
        },
        cache_ttl_s=_env_float("RECOMMENDATION_CACHE_TTL_S", 300.0),
        cache_sweep_interval_s=_env_float("CACHE_SWEEP_INTERVAL_S", 60.0),
        candidate_limit=_env_int("CANDIDATE_LIMIT", 20),
        llm_call_delay_s=_env_float("LLM_CALL_DELAY_S", 0.2),
        generation_deadline_s=_env_float("SYNC_GENERATION_DEADLINE_S", 1800.0),
        input_cost_per_million=_env_float("LLM_INPUT_COST_PER_MILLION", 2.0),
        output_cost_per_million=_env_float("LLM_OUTPUT_COST_PER_MILLION", 3.0),
        stuck_after_s=_env_float("SYNC_STUCK_AFTER_S", 2100.0),
    )


def sanitize_shop_domain(value: Optional[Any]) -> Optional[str]:
    """Normalize a raw shop domain (strip scheme and path, lower-case)."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    text = re.sub(r"^https?://", "", text)
    text = text.split("/", 1)[0]
    return text or None


def normalize_plan(value: Optional[str]) -> Optional[str]:
    """Return the plan tier if it is one we know about, else None."""
    if value is None:
        return None
    plan = str(value).strip().lower()
    return plan if plan in PLANS else None
