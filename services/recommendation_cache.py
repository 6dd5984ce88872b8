"""
Process-local read-side cache for recommendation queries.

Entries are keyed by ``(shop_id, product_ref, limit)`` and expire after a fixed
TTL. A committed sync drops the shop's entries before responding, and a
background task sweeps expired entries on a fixed interval.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from settings import load_pipeline_settings

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, int]


class RecommendationCache:
    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else load_pipeline_settings().cache_ttl_s
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, shop_id: str, product_ref: str, limit: int) -> Optional[Any]:
        key = (shop_id, product_ref, limit)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def put(self, shop_id: str, product_ref: str, limit: int, value: Any) -> None:
        with self._lock:
            self._entries[(shop_id, product_ref, limit)] = (self._clock() + self.ttl_seconds, value)

    def invalidate_tenant(self, shop_id: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key[0] == shop_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Dropped {len(stale)} cached recommendation entries for {shop_id}")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove expired entries; returns how many were evicted."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)


class CacheSweeper:
    """Runs ``cache.sweep()`` on a fixed interval in the background."""

    def __init__(self, cache: RecommendationCache, interval_s: Optional[float] = None) -> None:
        self.cache = cache
        self.interval_s = interval_s if interval_s is not None else load_pipeline_settings().cache_sweep_interval_s
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task

        async def _loop() -> None:
            while True:
                await asyncio.sleep(self.interval_s)
                evicted = self.cache.sweep()
                if evicted:
                    logger.info("Cache sweep evicted %d entries | remaining=%d", evicted, len(self.cache))

        self._task = asyncio.create_task(_loop())
        logger.info("Recommendation cache sweeper started | interval=%.0fs", self.interval_s)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


recommendation_cache = RecommendationCache()
cache_sweeper = CacheSweeper(recommendation_cache)
