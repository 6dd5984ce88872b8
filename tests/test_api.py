import pytest
from httpx import ASGITransport, AsyncClient

from main import app
from routers.dependencies import get_cache, get_ledger, get_monitor, get_orchestrator, get_storage

from conftest import CATALOG, product

ADMIN = {"Authorization": "Bearer test-admin-key"}


@pytest.fixture
async def client(storage, ledger, monitor, cache, make_orchestrator):
    orchestrator = make_orchestrator()
    app.dependency_overrides.update({
        get_storage: lambda: storage,
        get_ledger: lambda: ledger,
        get_monitor: lambda: monitor,
        get_cache: lambda: cache,
        get_orchestrator: lambda: orchestrator,
    })
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def register(client, domain="demo.myshopify.com", plan_name="basic"):
    response = await client.post("/api/shops/register", json={"domain": domain, "planName": plan_name})
    assert response.status_code == 200, response.text
    return {"x-api-key": response.json()["apiKey"]}


async def test_healthz(client):
    response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


async def test_register_is_idempotent(client):
    first = await client.post("/api/shops/register", json={"domain": "https://Demo.myshopify.com/admin"})
    second = await client.post("/api/shops/register", json={"domain": "demo.myshopify.com", "planName": "Shopify"})

    assert first.json()["isNew"] is True
    assert second.json()["isNew"] is False
    assert first.json()["apiKey"] == second.json()["apiKey"]
    assert first.json()["apiKey"].startswith("cw_")


async def test_register_refuses_development_stores(client):
    response = await client.post(
        "/api/shops/register", json={"domain": "dev.myshopify.com", "planName": "Development"}
    )
    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "DEV_STORE_NOT_WHITELISTED"
    assert body["requiresWhitelist"] is True


async def test_register_requires_domain(client):
    response = await client.post("/api/shops/register", json={"domain": "  "})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_sync_requires_api_key(client):
    response = await client.post("/api/products/sync", json={"products": CATALOG})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing x-api-key header"}

    response = await client.post("/api/products/sync", json={"products": CATALOG}, headers={"x-api-key": "nope"})
    assert response.status_code == 401


async def test_sync_then_query(client):
    headers = await register(client)

    response = await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["mode"] == "initial"
    assert body["products"] == 5
    assert body["newRecommendations"] == 12
    assert body["canRefresh"] is False
    assert body["refreshLimit"]["limit"] == 0
    assert body["tokenQuota"]["tokensUsed"] == 0

    response = await client.get("/api/recommendations/1", headers=headers)
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "4"
    data = response.json()
    assert data["productId"] == "1"
    assert {rec["id"] for rec in data["recommendations"]} == {"3", "4", "5"}

    response = await client.get("/api/recommendations/classic-tee", params={"limit": 1}, headers=headers)
    assert len(response.json()["recommendations"]) == 1

    response = await client.get("/api/recommendations/missing", headers=headers)
    assert response.json()["recommendations"] == []


async def test_public_recommendations(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)

    response = await client.get("/api/public/recommendations/demo.myshopify.com/3")
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    body = response.json()
    assert body["shop"] == "demo.myshopify.com"
    assert body["count"] == 2
    assert {rec["id"] for rec in body["recommendations"]} == {
        "gid://shopify/Product/4",
        "gid://shopify/Product/5",
    }
    assert body["recommendations"][0]["reasoning"] == "Perfect match"

    response = await client.get("/api/public/recommendations/unknown.myshopify.com/3")
    assert response.status_code == 404


async def test_daily_api_limit(client):
    headers = await register(client)
    for _ in range(5):
        assert (await client.get("/api/recommendations/1", headers=headers)).status_code == 200

    response = await client.get("/api/recommendations/1", headers=headers)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    body = response.json()
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["limit"] == 5


async def test_refresh_on_free_plan_is_429(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)

    response = await client.post(
        "/api/products/sync", json={"products": CATALOG, "mode": "refresh"}, headers=headers
    )
    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "REFRESH_LIMIT_EXCEEDED"
    assert body["limit"] == 0
    assert body["plan"] == "free"


async def test_bad_sync_payloads(client):
    headers = await register(client)

    response = await client.post("/api/products/sync", json={"products": []}, headers=headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Products required", "code": "VALIDATION_ERROR"}

    response = await client.post("/api/products/sync", json={"products": [{"title": "No id"}]}, headers=headers)
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"

    response = await client.post(
        "/api/products/sync", json={"products": CATALOG, "mode": "sometimes"}, headers=headers
    )
    assert response.status_code == 422


async def test_sync_status_and_plan_upgrade(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)

    status = (await client.get("/api/shops/sync-status", headers=headers)).json()["syncStatus"]
    assert status["initialSyncDone"] is True
    assert status["productCount"] == 5
    assert status["recommendationCount"] == 12
    assert status["isSyncing"] is False
    assert status["refreshLimit"]["canRefresh"] is False
    assert status["apiUsage"]["limit"] == 5
    assert status["tokenQuota"] is not None

    response = await client.put("/api/shops/plan", json={"plan": "gold"}, headers=headers)
    assert response.status_code == 400

    response = await client.put("/api/shops/plan", json={"plan": "pro"}, headers=headers)
    assert response.json()["shop"]["plan"] == "pro"

    status = (await client.get("/api/shops/sync-status", headers=headers)).json()["syncStatus"]
    assert status["refreshLimit"]["limit"] == 3
    assert status["refreshLimit"]["canRefresh"] is True
    assert status["tokenQuota"] is None

    response = await client.post(
        "/api/products/sync", json={"products": CATALOG, "mode": "refresh"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["mode"] == "refresh"
    assert "tokenQuota" not in response.json()


async def test_sync_logs(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)
    await client.post("/api/products/sync", json={"products": []}, headers=headers)

    logs = (await client.get("/api/shops/sync-logs", headers=headers)).json()["logs"]
    assert sorted(log["status"] for log in logs) == ["failed", "success"]


async def test_delete_recommendations_resets_the_catalog(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)

    listing = (await client.get("/api/recommendations", headers=headers)).json()
    assert listing["stats"] == {"products": 5, "recommendations": 12}

    response = await client.delete("/api/recommendations", headers=headers)
    assert response.json()["deletedProducts"] == 5
    assert response.json()["deletedRecommendations"] == 12

    me = (await client.get("/api/shops/me", headers=headers)).json()["shop"]
    assert me["initialSyncDone"] is False
    assert me["productCount"] == 0

    extra = CATALOG[:2] + [product("6", "Silver Bracelet", "Jewelry", 40.0)]
    response = await client.post("/api/products/sync", json={"products": extra}, headers=headers)
    assert response.json()["mode"] == "initial"


async def test_query_api_flag(client):
    headers = await register(client)
    response = await client.put("/api/admin/flags/api.recommendations", json={"value": False}, headers=ADMIN)
    assert response.status_code == 200

    response = await client.get("/api/recommendations/1", headers=headers)
    assert response.status_code == 503


async def test_admin_requires_bearer(client):
    assert (await client.get("/api/admin/global-quota")).status_code == 401
    response = await client.get("/api/admin/global-quota", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401

    response = await client.get("/api/admin/global-quota", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["tokensUsed"] == 0


async def test_admin_whitelists_development_store(client, make_shop):
    shop = await make_shop("dev.myshopify.com", plan_name="Development")

    response = await client.put(f"/api/admin/shops/{shop.id}/whitelist", json={"isWhitelisted": True}, headers=ADMIN)
    assert response.json()["shop"]["isWhitelisted"] is True

    response = await client.post(
        "/api/shops/register", json={"domain": "dev.myshopify.com", "planName": "Development"}
    )
    assert response.status_code == 200
    assert response.json()["isWhitelisted"] is True

    response = await client.put("/api/admin/shops/missing/whitelist", json={"isWhitelisted": True}, headers=ADMIN)
    assert response.status_code == 404


async def test_admin_sync_controls(client):
    headers = await register(client)
    await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)
    shop_id = (await client.get("/api/shops/me", headers=headers)).json()["shop"]["id"]

    response = await client.put(
        f"/api/admin/shops/{shop_id}/sync-permission", json={"isSyncEnabled": False}, headers=ADMIN
    )
    assert response.json()["shop"]["isSyncEnabled"] is False

    response = await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)
    assert response.status_code == 403
    assert response.json()["code"] == "SYNC_DISABLED"

    response = await client.post(f"/api/admin/shops/{shop_id}/trigger-sync", headers=ADMIN)
    assert response.status_code == 403

    await client.put(f"/api/admin/shops/{shop_id}/sync-permission", json={"isSyncEnabled": True}, headers=ADMIN)
    response = await client.post(f"/api/admin/shops/{shop_id}/trigger-sync", headers=ADMIN)
    assert response.json()["shop"]["initialSyncDone"] is False

    response = await client.post(f"/api/admin/shops/{shop_id}/reset-sync", headers=ADMIN)
    assert response.json()["deletedProducts"] == 5

    metrics = (await client.get("/api/admin/metrics", headers=ADMIN)).json()["metrics"]
    assert metrics["rejection_reasons"] == {"SYNC_DISABLED": 1}


async def test_admin_global_quota_blocks_free_syncs(client):
    headers = await register(client)
    response = await client.put("/api/admin/global-quota", json={"dailyTokenQuota": 1}, headers=ADMIN)
    assert response.json()["quota"] == 1

    response = await client.put("/api/admin/global-quota", json={"dailyTokenQuota": 0}, headers=ADMIN)
    assert response.status_code == 422

    response = await client.post("/api/products/sync", json={"products": CATALOG}, headers=headers)
    assert response.status_code == 200
