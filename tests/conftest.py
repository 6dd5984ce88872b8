import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Pin the in-memory sqlite engine and the deterministic picker before any app import
os.environ["DATABASE_URL"] = ""
os.environ.pop("INSTANCE_UNIX_SOCKET", None)
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEEPSEEK_API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "test-admin-key"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base, seed_global_quota
from services.feature_flags import feature_flags
from services.obs.metrics import MetricsCollector
from services.quota_ledger import QuotaLedger
from services.recommendation_cache import RecommendationCache
from services.recommendation_generator import FallbackGenerator, RecommendationGenerator
from services.storage import StorageService
from services.sync_monitor import SyncMonitor
from services.sync_orchestrator import SyncOrchestrator
from settings import PipelineSettings

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_flags():
    feature_flags.reset()
    yield
    feature_flags.reset()


@pytest.fixture
def settings():
    return PipelineSettings(
        global_daily_token_quota=1_000_000,
        shop_daily_token_quota=500_000,
        refresh_limits={"free": 0, "pro": 3, "max": 10},
        api_limits={"free": 5, "pro": 50, "max": 50},
        llm_call_delay_s=0.0,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def storage(session_factory):
    await seed_global_quota(session_factory)
    return StorageService(session_factory)


@pytest.fixture
def ledger(session_factory, settings):
    return QuotaLedger(session_factory, settings)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def monitor(storage, metrics, settings):
    return SyncMonitor(storage, metrics, settings)


@pytest.fixture
def cache():
    return RecommendationCache(ttl_seconds=300)


def fallback_factory(shop_id=None):
    fallback = FallbackGenerator()
    return RecommendationGenerator(fallback, fallback)


@pytest.fixture
def make_orchestrator(storage, ledger, monitor, cache):
    def _make(generator_factory=fallback_factory, clock=lambda: NOW):
        return SyncOrchestrator(
            storage=storage,
            ledger=ledger,
            monitor=monitor,
            cache=cache,
            generator_factory=generator_factory,
            clock=clock,
        )
    return _make


@pytest.fixture
def make_shop(storage):
    async def _make(domain="demo.myshopify.com", plan_name="basic", **updates):
        shop, _ = await storage.register_shop(domain, plan_name)
        if updates:
            shop = await storage.update_shop(shop.id, updates)
        return shop
    return _make


def product(product_id, title, product_type="", price=10.0, handle=None, tags=()):
    return {
        "id": product_id,
        "title": title,
        "handle": handle or title.lower().replace(" ", "-"),
        "productType": product_type,
        "price": price,
        "tags": list(tags),
    }


CATALOG = [
    product("1", "Classic Tee", "Tops", 20.0),
    product("2", "Slim Jeans", "Bottoms", 60.0),
    product("3", "Canvas Tote Bag", "Bags", 25.0),
    product("4", "Leather Belt", "Accessories", 30.0),
    product("5", "Wool Beanie", "Hats", 15.0),
]
