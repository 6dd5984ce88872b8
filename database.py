# --- models for the catalog sync / recommendation pipeline ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Text, Integer, Float, Date, DateTime, Boolean, JSON,
    ForeignKey, func, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import date, datetime
from typing import AsyncGenerator, List, Optional
import logging, os, time, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg takes 'ssl', not 'sslmode'
    connect_args = {
        "server_settings": {"application_name": "ai_crosssell_backend"},
        "command_timeout": 60,
        "timeout": 30,
    }
    if "sslmode=require" in DATABASE_URL:
        DATABASE_URL = DATABASE_URL.replace("?sslmode=require", "").replace("&sslmode=require", "")
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=int(os.getenv("DB_POOL_SIZE", "20")),
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,
        pool_timeout=20,
        connect_args=connect_args,
        # Row locks on the quota rows rely on read-committed semantics
        execution_options={"isolation_level": "READ COMMITTED"},
    )
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "crosssell")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_timeout=15,
        )
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
    except ValueError:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

async def check_db_health() -> dict:
    """Round-trip a trivial query; used by /api/health."""
    started = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "dialect": engine.dialect.name,
            "latencyMs": int((time.monotonic() - started) * 1000),
        }
    except Exception as e:
        logger.warning(f"DB health check failed: {e}")
        return {"status": "unhealthy", "dialect": engine.dialect.name, "error": type(e).__name__}

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in dev/tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

GLOBAL_QUOTA_ID = "global"

def _shop_id() -> str:
    return f"shop_{uuid.uuid4().hex[:12]}"

def _sync_log_id() -> str:
    return f"synclog_{uuid.uuid4().hex[:16]}"

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class Shop(Base):
    __tablename__ = "shops"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_shop_id)
    domain: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    api_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    plan: Mapped[str] = mapped_column(String, nullable=False, default="free")
    plan_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subscription_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Sync state
    initial_sync_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_refresh_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    product_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Monthly refresh counter; refresh_cycle is the cycle key the count belongs to
    refresh_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refresh_cycle: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Daily token counter + the UTC date it was last reset against
    daily_token_quota: Mapped[int] = mapped_column(Integer, nullable=False, default=10_000_000)
    tokens_used_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_reset_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Daily query API usage
    api_calls_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_calls_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Eligibility / kill switch
    is_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_development_store: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("plan IN ('free','pro','max')", name="ck_shops_plan"),
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)

    handle: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    product_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("shop_id", "product_id", name="uq_products_shop_product"),
    )


class Recommendation(Base):
    __tablename__ = "recommendations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    source_id: Mapped[str] = mapped_column(String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    target_id: Mapped[str] = mapped_column(String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Owned by the storefront tracking collaborator
    impressions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("shop_id", "source_id", "target_id", name="uq_recommendations_edge"),
    )


class GlobalQuota(Base):
    __tablename__ = "global_quota"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=GLOBAL_QUOTA_ID)
    daily_token_quota: Mapped[int] = mapped_column(Integer, nullable=False, default=10_000_000)
    tokens_used_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_reset_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_sync_log_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    mode: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="started")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    products_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recommendations_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    error_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('started','success','failed')",
            name="ck_sync_logs_status",
        ),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_products_shop', Product.shop_id)
Index('ix_products_shop_handle', Product.shop_id, Product.handle)
Index('ix_recommendations_shop_source', Recommendation.shop_id, Recommendation.source_id)
Index('ix_sync_logs_shop_started', SyncLog.shop_id, SyncLog.started_at)
Index('ix_sync_logs_status', SyncLog.status)
# -------------------------------------------------------------------
# DI + init helpers
# -------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

async def seed_global_quota(session_factory=None) -> None:
    """Create the global quota singleton if it does not exist yet."""
    from settings import load_pipeline_settings

    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        async with session.begin():
            existing = await session.get(GlobalQuota, GLOBAL_QUOTA_ID)
            if existing is None:
                session.add(GlobalQuota(
                    id=GLOBAL_QUOTA_ID,
                    daily_token_quota=load_pipeline_settings().global_daily_token_quota,
                ))

async def init_db():
    """Ensure tables exist and the global quota row is seeded."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await seed_global_quota()
    logger.info("DB init complete (tables ensured).")
