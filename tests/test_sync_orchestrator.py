import pytest
from sqlalchemy import select

from database import Product
from schemas.sync_schemas import SyncRequest
from services.errors import (
    DevelopmentStoreError,
    InternalSyncError,
    RefreshLimitExceededError,
    SyncDisabledError,
    TokenQuotaExceededError,
    ValidationError,
)
from services.feature_flags import feature_flags
from services.quota_ledger import shop_token_budget
from services.recommendation_generator import (
    FallbackGenerator,
    Pick,
    PickOutcome,
    RecommendationGenerator,
    TokenUsage,
)
from services.sync_mode import SyncMode

from conftest import CATALOG, NOW, product


def sync_request(products=CATALOG, **kwargs):
    return SyncRequest.model_validate({"products": products, **kwargs})


async def target_ids(storage, shop_id, ref):
    recs = await storage.find_recommendations(shop_id, ref, limit=10)
    return {rec["id"] for rec in recs}


async def latest_log(storage, shop_id):
    logs = await storage.list_sync_logs(shop_id)
    return logs[0]


async def seed_edge(storage, session_factory, shop_id, source_ref, target_ref):
    async with session_factory() as session:
        async with session.begin():
            rows = (
                await session.execute(
                    select(Product.product_id, Product.id).where(
                        Product.shop_id == shop_id, Product.product_id.in_([source_ref, target_ref])
                    )
                )
            ).all()
            ids = {ref: row_id for ref, row_id in rows}
            await storage.upsert_recommendations(session, shop_id, [(ids[source_ref], ids[target_ref], "Manual")])


class TokenSpendingPicker:
    """Always picks the first candidate and reports a fixed token spend."""

    is_live = True

    async def pick(self, source, candidates):
        return PickOutcome(
            picks=[Pick(target_id=candidates[0].product_id, reason="Pairs well")],
            usage=TokenUsage(prompt_tokens=80, completion_tokens=20, total_tokens=100),
            source="llm",
        )


def spending_factory(shop_id=None):
    return RecommendationGenerator(TokenSpendingPicker(), FallbackGenerator())


class BrokenGenerator:
    async def generate(self, targets, pool):
        raise RuntimeError("generator crashed")


async def test_initial_sync_generates_for_every_product(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    outcome = await make_orchestrator().run(shop, sync_request())

    assert outcome.mode is SyncMode.INITIAL
    assert outcome.products == 5
    assert outcome.new_recommendations == 12
    assert outcome.total_recommendations == 12
    assert await target_ids(storage, shop.id, "1") == {"3", "4", "5"}
    assert await target_ids(storage, shop.id, "3") == {"4", "5"}

    fresh = await storage.get_shop(shop.id)
    assert fresh.initial_sync_done
    assert fresh.product_count == 5
    assert fresh.last_refresh_at is not None

    response = outcome.to_response()
    assert response["mode"] == "initial"
    assert response["canRefresh"] is False
    assert response["tokenQuota"]["tokensUsed"] == 0

    log = await latest_log(storage, shop.id)
    assert log.status == "success"
    assert log.recommendations_generated == 12


async def test_incremental_sync_only_covers_new_products(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())

    shop = await storage.get_shop(shop.id)
    catalog = CATALOG + [
        product("6", "Silver Bracelet", "Jewelry", 40.0),
        product("7", "Canvas Sneakers", "Shoes", 55.0),
    ]
    outcome = await orchestrator.run(shop, sync_request(catalog))

    assert outcome.mode is SyncMode.INCREMENTAL
    assert outcome.products == 7
    assert outcome.new_recommendations == 6
    assert outcome.total_recommendations == 18
    assert len(await target_ids(storage, shop.id, "6")) == 3
    assert len(await target_ids(storage, shop.id, "7")) == 3
    assert await target_ids(storage, shop.id, "1") == {"3", "4", "5"}
    assert (await storage.get_shop(shop.id)).product_count == 7


async def test_resync_of_unchanged_catalog_is_a_noop(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())

    outcome = await orchestrator.run(await storage.get_shop(shop.id), sync_request())
    assert outcome.mode is SyncMode.INCREMENTAL
    assert outcome.new_recommendations == 0
    assert outcome.total_recommendations == 12


async def test_refresh_regenerates_and_counts_against_cycle(storage, session_factory, make_orchestrator, make_shop):
    shop = await make_shop(plan="pro")
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())
    # tee -> jeans is admissible but the accessory-first picker never chooses it
    await seed_edge(storage, session_factory, shop.id, "1", "2")
    assert await target_ids(storage, shop.id, "1") == {"2", "3", "4", "5"}

    shop = await storage.get_shop(shop.id)
    outcome = await orchestrator.run(shop, sync_request(mode="refresh"))

    assert outcome.mode is SyncMode.REFRESH
    assert outcome.total_recommendations == 12
    assert outcome.token_quota is None
    assert await target_ids(storage, shop.id, "1") == {"3", "4", "5"}
    assert (outcome.refresh.used, outcome.refresh.remaining) == (1, 2)

    fresh = await storage.get_shop(shop.id)
    assert fresh.refresh_count == 1
    assert fresh.refresh_cycle == "2025-03-01"


async def test_legacy_regenerate_flag_means_refresh(storage, make_orchestrator, make_shop):
    shop = await make_shop(plan="max")
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())

    outcome = await orchestrator.run(await storage.get_shop(shop.id), sync_request(regenerate=True))
    assert outcome.mode is SyncMode.REFRESH


async def test_refresh_on_free_plan_is_rejected_and_audited(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())

    with pytest.raises(RefreshLimitExceededError) as exc_info:
        await orchestrator.run(await storage.get_shop(shop.id), sync_request(mode="refresh"))
    assert exc_info.value.status_code == 429
    payload = exc_info.value.to_payload()
    assert payload["limit"] == 0
    assert payload["nextRefreshAt"] == "2025-04-01T00:00:00+00:00"

    logs = await storage.list_sync_logs(shop.id)
    assert sorted(log.status for log in logs) == ["failed", "success"]
    failed = next(log for log in logs if log.status == "failed")
    assert failed.error_code == "REFRESH_LIMIT_EXCEEDED"
    assert failed.mode == "refresh"
    assert await storage.count_recommendations(shop.id) == 12


async def test_disabled_sync_is_rejected(storage, make_orchestrator, make_shop):
    shop = await make_shop(is_sync_enabled=False)
    with pytest.raises(SyncDisabledError) as exc_info:
        await make_orchestrator().run(shop, sync_request())
    assert exc_info.value.code == "SYNC_DISABLED"
    assert await storage.count_products(shop.id) == 0


async def test_kill_switch_disables_every_sync(make_orchestrator, make_shop):
    shop = await make_shop()
    feature_flags.set_kill_switch("emergency.disable_all_syncs", True)
    with pytest.raises(SyncDisabledError):
        await make_orchestrator().run(shop, sync_request())


async def test_development_store_needs_whitelist(storage, make_orchestrator, make_shop):
    shop = await make_shop("dev.myshopify.com", plan_name="Development")
    assert shop.is_development_store
    with pytest.raises(DevelopmentStoreError) as exc_info:
        await make_orchestrator().run(shop, sync_request())
    assert exc_info.value.to_payload()["requiresWhitelist"] is True

    shop = await storage.update_shop(shop.id, {"is_whitelisted": True})
    outcome = await make_orchestrator().run(shop, sync_request())
    assert outcome.products == 5


async def test_exhausted_global_tokens_reject_free_shops(ledger, make_orchestrator, make_shop):
    await ledger.set_global_quota(0, NOW)
    free = await make_shop()
    with pytest.raises(TokenQuotaExceededError) as exc_info:
        await make_orchestrator().run(free, sync_request())
    assert exc_info.value.to_payload()["scope"] == "global"

    pro = await make_shop("pro.myshopify.com", plan="pro")
    outcome = await make_orchestrator().run(pro, sync_request())
    assert outcome.products == 5


async def test_exhausted_shop_tokens_reject_the_shop(make_orchestrator, make_shop):
    shop = await make_shop(daily_token_quota=100, tokens_used_today=100, token_reset_date=NOW.date())
    with pytest.raises(TokenQuotaExceededError) as exc_info:
        await make_orchestrator().run(shop, sync_request())
    assert exc_info.value.to_payload()["scope"] == "shop"


async def test_empty_product_list_is_a_validation_error(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    with pytest.raises(ValidationError):
        await make_orchestrator().run(shop, sync_request([]))
    log = await latest_log(storage, shop.id)
    assert (log.status, log.error_code) == ("failed", "VALIDATION_ERROR")


async def test_tokens_are_debited_for_free_shops(storage, ledger, make_orchestrator, make_shop):
    shop = await make_shop()
    outcome = await make_orchestrator(generator_factory=spending_factory).run(shop, sync_request())

    assert outcome.new_recommendations == 5
    assert outcome.token_quota.used == 500
    fresh = await storage.get_shop(shop.id)
    assert shop_token_budget(fresh, NOW).used == 500
    assert (await ledger.check_global_tokens(NOW)).used == 500

    log = await latest_log(storage, shop.id)
    assert log.tokens_used == 500
    assert log.prompt_tokens == 400


async def test_paid_shops_are_not_debited(storage, ledger, make_orchestrator, make_shop):
    shop = await make_shop(plan="pro")
    await make_orchestrator(generator_factory=spending_factory).run(shop, sync_request())
    assert (await storage.get_shop(shop.id)).tokens_used_today == 0
    assert (await ledger.check_global_tokens(NOW)).used == 0


async def test_failed_generation_rolls_back_everything(storage, make_orchestrator, make_shop):
    shop = await make_shop()
    orchestrator = make_orchestrator(generator_factory=lambda shop_id=None: BrokenGenerator())

    with pytest.raises(InternalSyncError) as exc_info:
        await orchestrator.run(shop, sync_request())
    assert isinstance(exc_info.value.__cause__, RuntimeError)

    fresh = await storage.get_shop(shop.id)
    assert not fresh.initial_sync_done
    assert fresh.product_count == 0
    assert await storage.count_products(shop.id) == 0
    log = await latest_log(storage, shop.id)
    assert (log.status, log.error_code) == ("failed", "INTERNAL_ERROR")
    assert "generator crashed" in log.error_message


async def test_duplicate_products_keep_the_last_copy(storage, session_factory, make_orchestrator, make_shop):
    shop = await make_shop()
    catalog = CATALOG + [product("gid://shopify/Product/1", "Classic Tee v2", "Tops", 22.0, handle="classic-tee")]
    outcome = await make_orchestrator().run(shop, sync_request(catalog))

    assert outcome.products == 5
    async with session_factory() as session:
        row = (
            await session.execute(select(Product).where(Product.shop_id == shop.id, Product.product_id == "1"))
        ).scalar_one()
    assert row.title == "Classic Tee v2"
    assert row.price == 22.0


async def test_committed_sync_invalidates_cached_reads(cache, make_orchestrator, make_shop):
    shop = await make_shop()
    cache.put(shop.id, "1", 3, {"recommendations": []})
    cache.put("other_shop", "1", 3, {"recommendations": []})

    await make_orchestrator().run(shop, sync_request())

    assert cache.get(shop.id, "1", 3) is None
    assert cache.get("other_shop", "1", 3) is not None


async def test_rejected_sync_leaves_cache_alone(cache, make_orchestrator, make_shop):
    shop = await make_shop(is_sync_enabled=False)
    cache.put(shop.id, "1", 3, {"recommendations": []})
    with pytest.raises(SyncDisabledError):
        await make_orchestrator().run(shop, sync_request())
    assert cache.get(shop.id, "1", 3) is not None


async def test_fourth_refresh_in_a_cycle_is_rejected(storage, make_orchestrator, make_shop):
    shop = await make_shop(plan="pro")
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())
    for _ in range(3):
        await orchestrator.run(await storage.get_shop(shop.id), sync_request(mode="refresh"))

    with pytest.raises(RefreshLimitExceededError) as exc_info:
        await orchestrator.run(await storage.get_shop(shop.id), sync_request(mode="refresh"))
    payload = exc_info.value.to_payload()
    assert (payload["used"], payload["remaining"]) == (3, 0)
    assert payload["nextRefreshAt"] == "2025-04-01T00:00:00+00:00"
    assert (await storage.get_shop(shop.id)).refresh_count == 3


async def test_stale_refresh_cycle_restarts_the_count(storage, make_orchestrator, make_shop):
    shop = await make_shop(plan="pro")
    orchestrator = make_orchestrator()
    await orchestrator.run(shop, sync_request())
    shop = await storage.update_shop(shop.id, {"refresh_count": 3, "refresh_cycle": "2025-02-01"})

    outcome = await orchestrator.run(shop, sync_request(mode="refresh"))
    assert outcome.mode is SyncMode.REFRESH
    fresh = await storage.get_shop(shop.id)
    assert (fresh.refresh_count, fresh.refresh_cycle) == (1, "2025-03-01")


async def test_admission_crash_is_audited_as_internal_error(storage, ledger, make_orchestrator, make_shop, monkeypatch):
    shop = await make_shop()

    async def db_down(now=None):
        raise RuntimeError("db down")

    monkeypatch.setattr(ledger, "check_global_tokens", db_down)
    with pytest.raises(InternalSyncError) as exc_info:
        await make_orchestrator().run(shop, sync_request())
    assert isinstance(exc_info.value.__cause__, RuntimeError)

    logs = await storage.list_sync_logs(shop.id)
    assert [(log.status, log.error_code) for log in logs] == [("failed", "INTERNAL_ERROR")]
    assert await storage.count_products(shop.id) == 0


async def test_committed_sync_does_not_depend_on_later_quota_reads(
    storage, ledger, cache, make_orchestrator, make_shop, monkeypatch
):
    shop = await make_shop()
    cache.put(shop.id, "1", 3, {"recommendations": []})
    real_check = ledger.check_global_tokens
    calls = []

    async def check_once(now=None):
        calls.append(now)
        if len(calls) > 1:
            raise RuntimeError("db down")
        return await real_check(now)

    monkeypatch.setattr(ledger, "check_global_tokens", check_once)
    outcome = await make_orchestrator().run(shop, sync_request())

    assert outcome.total_recommendations == 12
    assert outcome.token_quota.used == 0
    assert outcome.refresh.limit == 0
    assert cache.get(shop.id, "1", 3) is None
    log = await latest_log(storage, shop.id)
    assert log.status == "success"
