import asyncio

from services.recommendation_cache import CacheSweeper, RecommendationCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = RecommendationCache(ttl_seconds=60, clock=clock)
    cache.put("shop_a", "tee", 3, ["belt"])

    clock.now += 59
    assert cache.get("shop_a", "tee", 3) == ["belt"]
    assert cache.get("shop_a", "tee", 5) is None

    clock.now += 1
    assert cache.get("shop_a", "tee", 3) is None
    assert len(cache) == 0


def test_invalidate_tenant_only_drops_that_shop():
    cache = RecommendationCache(ttl_seconds=60, clock=FakeClock())
    cache.put("shop_a", "tee", 3, [])
    cache.put("shop_a", "jeans", 3, [])
    cache.put("shop_b", "tee", 3, ["belt"])

    assert cache.invalidate_tenant("shop_a") == 2
    assert cache.get("shop_b", "tee", 3) == ["belt"]
    assert cache.invalidate_tenant("shop_a") == 0


def test_sweep_evicts_only_expired_entries():
    clock = FakeClock()
    cache = RecommendationCache(ttl_seconds=60, clock=clock)
    cache.put("shop_a", "old", 3, [])
    clock.now += 30
    cache.put("shop_a", "new", 3, [])
    clock.now += 30

    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.get("shop_a", "new", 3) == []


async def test_sweeper_runs_in_background():
    clock = FakeClock()
    cache = RecommendationCache(ttl_seconds=1, clock=clock)
    cache.put("shop_a", "tee", 3, [])
    clock.now += 5

    sweeper = CacheSweeper(cache, interval_s=0.01)
    sweeper.start()
    assert sweeper.running
    for _ in range(50):
        if not len(cache):
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert len(cache) == 0
    assert not sweeper.running
