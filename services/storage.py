"""
Storage Service Layer
Database operations for shops, products, recommendation edges and sync logs.

Methods that take a ``session`` run inside the caller's transaction (the sync
unit of work); the rest open and commit their own session.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, desc, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased
from typing import List, Optional, Dict, Any, Iterable, Sequence, Set, Tuple
import logging
import uuid
from datetime import datetime, timezone

from database import AsyncSessionLocal, Shop, Product, Recommendation, SyncLog
from services.candidate_filter import CatalogItem
from services.shop_eligibility import is_development_store
from settings import load_pipeline_settings, sanitize_shop_domain

logger = logging.getLogger(__name__)

# Keeps bound parameters per statement well under SQLite's limit
UPSERT_CHUNK_SIZE = 500

PRODUCT_UPDATE_COLUMNS = (
    "handle", "title", "description", "product_type", "vendor", "price", "image", "tags", "updated_at",
)


def dialect_insert(session: AsyncSession, model):
    """INSERT construct with ON CONFLICT support for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _chunks(rows: Sequence[Any], size: int = UPSERT_CHUNK_SIZE) -> Iterable[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self._session_factory()

    # ---------- Shops ----------

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        async with self.get_session() as session:
            return await session.get(Shop, shop_id)

    async def get_shop_by_api_key(self, api_key: str) -> Optional[Shop]:
        if not api_key:
            return None
        async with self.get_session() as session:
            result = await session.execute(select(Shop).where(Shop.api_key == api_key))
            return result.scalars().first()

    async def get_shop_by_domain(self, domain: str) -> Optional[Shop]:
        normalized = sanitize_shop_domain(domain)
        if not normalized:
            return None
        async with self.get_session() as session:
            result = await session.execute(select(Shop).where(Shop.domain == normalized))
            return result.scalars().first()

    async def register_shop(self, domain: str, plan_name: Optional[str] = None) -> Tuple[Shop, bool]:
        """Create the shop if new; otherwise refresh its plan name. Returns (shop, created)."""
        normalized = sanitize_shop_domain(domain)
        if not normalized:
            raise ValueError("domain is required")

        async with self.get_session() as session:
            result = await session.execute(select(Shop).where(Shop.domain == normalized))
            shop = result.scalars().first()
            if shop is not None:
                if plan_name:
                    shop.plan_name = plan_name
                    shop.is_development_store = is_development_store(plan_name)
                    await session.commit()
                    await session.refresh(shop)
                return shop, False

            shop = Shop(
                domain=normalized,
                api_key=f"cw_{uuid.uuid4().hex}",
                plan="free",
                plan_name=plan_name,
                is_development_store=is_development_store(plan_name),
                daily_token_quota=load_pipeline_settings().shop_daily_token_quota,
            )
            session.add(shop)
            await session.commit()
            await session.refresh(shop)
            logger.info(
                f"Registered shop {normalized} as {shop.id} "
                f"(plan_name={plan_name}, development_store={shop.is_development_store})"
            )
            return shop, True

    async def update_shop(self, shop_id: str, updates: Dict[str, Any]) -> Optional[Shop]:
        async with self.get_session() as session:
            shop = await session.get(Shop, shop_id)
            if shop:
                for key, value in updates.items():
                    setattr(shop, key, value)
                await session.commit()
                await session.refresh(shop)
            return shop

    async def list_shops(self, limit: int = 100, offset: int = 0) -> List[Shop]:
        async with self.get_session() as session:
            query = select(Shop).order_by(desc(Shop.created_at)).limit(limit).offset(offset)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def lock_shop(self, session: AsyncSession, shop_id: str) -> Optional[Shop]:
        """Row-lock the shop for the rest of the caller's transaction and return fresh values."""
        query = (
            select(Shop)
            .where(Shop.id == shop_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        return result.scalars().first()

    async def update_shop_sync_state(
        self,
        session: AsyncSession,
        shop_id: str,
        *,
        product_count: int,
        mark_initial_done: bool,
        stamp_refresh: bool,
        now: datetime,
    ) -> None:
        values: Dict[str, Any] = {"product_count": product_count, "updated_at": now}
        if mark_initial_done:
            values["initial_sync_done"] = True
        if stamp_refresh:
            values["last_refresh_at"] = now
        await session.execute(
            update(Shop)
            .where(Shop.id == shop_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ---------- Products ----------

    async def upsert_products(
        self, session: AsyncSession, shop_id: str, items: Sequence[CatalogItem]
    ) -> Dict[str, str]:
        """Insert or update products by (shop_id, product_id); returns external id → row id."""
        if not items:
            return {}
        now = _utcnow()
        rows = [
            {
                "id": uuid.uuid4().hex,
                "shop_id": shop_id,
                "product_id": item.product_id,
                "handle": item.handle or None,
                "title": item.title,
                "description": item.description or None,
                "product_type": item.product_type or None,
                "vendor": item.vendor or None,
                "price": float(item.price or 0.0),
                "image": item.image or None,
                "tags": list(item.tags),
                "created_at": now,
                "updated_at": now,
            }
            for item in items
        ]
        for chunk in _chunks(rows):
            stmt = dialect_insert(session, Product).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=[Product.shop_id, Product.product_id],
                set_={col: getattr(stmt.excluded, col) for col in PRODUCT_UPDATE_COLUMNS},
            )
            await session.execute(stmt)

        external_ids = [item.product_id for item in items]
        id_map: Dict[str, str] = {}
        for chunk in _chunks(external_ids):
            result = await session.execute(
                select(Product.product_id, Product.id).where(
                    Product.shop_id == shop_id, Product.product_id.in_(list(chunk))
                )
            )
            id_map.update({external: internal for external, internal in result.all()})
        return id_map

    async def count_products(self, shop_id: str, session: Optional[AsyncSession] = None) -> int:
        query = select(func.count()).select_from(Product).where(Product.shop_id == shop_id)
        if session is not None:
            return int((await session.execute(query)).scalar_one())
        async with self.get_session() as own:
            return int((await own.execute(query)).scalar_one())

    async def delete_products(self, shop_id: str) -> int:
        """Remove every product (and its edges) for a shop."""
        async with self.get_session() as session:
            async with session.begin():
                await self.delete_recommendations(shop_id, session=session)
                result = await session.execute(delete(Product).where(Product.shop_id == shop_id))
                await session.execute(
                    update(Shop).where(Shop.id == shop_id).values(product_count=0)
                )
            return result.rowcount or 0

    # ---------- Recommendations ----------

    async def delete_recommendations(self, shop_id: str, session: Optional[AsyncSession] = None) -> int:
        stmt = delete(Recommendation).where(Recommendation.shop_id == shop_id)
        if session is not None:
            result = await session.execute(stmt)
            return result.rowcount or 0
        async with self.get_session() as own:
            async with own.begin():
                result = await own.execute(stmt)
            return result.rowcount or 0

    async def source_ids_with_recommendations(
        self, session: AsyncSession, shop_id: str, product_row_ids: Sequence[str]
    ) -> Set[str]:
        """Subset of the given product row ids that already have outgoing edges."""
        found: Set[str] = set()
        for chunk in _chunks(list(product_row_ids)):
            result = await session.execute(
                select(Recommendation.source_id)
                .where(Recommendation.shop_id == shop_id, Recommendation.source_id.in_(list(chunk)))
                .distinct()
            )
            found.update(result.scalars().all())
        return found

    async def upsert_recommendations(
        self, session: AsyncSession, shop_id: str, edges: Sequence[Tuple[str, str, str]]
    ) -> int:
        """Insert (source_row_id, target_row_id, reason) edges or refresh their reason."""
        rows: Dict[Tuple[str, str], Dict[str, Any]] = {}
        now = _utcnow()
        for source_id, target_id, reason in edges:
            rows[(source_id, target_id)] = {
                "id": uuid.uuid4().hex,
                "shop_id": shop_id,
                "source_id": source_id,
                "target_id": target_id,
                "reason": reason,
                "created_at": now,
            }
        if not rows:
            return 0
        for chunk in _chunks(list(rows.values())):
            stmt = dialect_insert(session, Recommendation).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=[Recommendation.shop_id, Recommendation.source_id, Recommendation.target_id],
                set_={"reason": stmt.excluded.reason},
            )
            await session.execute(stmt)
        return len(rows)

    async def count_recommendations(self, shop_id: str, session: Optional[AsyncSession] = None) -> int:
        query = select(func.count()).select_from(Recommendation).where(Recommendation.shop_id == shop_id)
        if session is not None:
            return int((await session.execute(query)).scalar_one())
        async with self.get_session() as own:
            return int((await own.execute(query)).scalar_one())

    async def find_recommendations(
        self, shop_id: str, product_ref: str, limit: int = 3
    ) -> Optional[List[Dict[str, Any]]]:
        """Edges for a source looked up by external id or handle; None when the source is unknown."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Product)
                .where(
                    Product.shop_id == shop_id,
                    or_(Product.product_id == product_ref, Product.handle == product_ref),
                )
                .limit(1)
            )
            source = result.scalars().first()
            if source is None:
                return None

            result = await session.execute(
                select(Recommendation, Product)
                .join(Product, Product.id == Recommendation.target_id)
                .where(Recommendation.shop_id == shop_id, Recommendation.source_id == source.id)
                .order_by(Recommendation.created_at, Recommendation.id)
                .limit(limit)
            )
            return [
                {
                    "id": target.product_id,
                    "handle": target.handle,
                    "title": target.title,
                    "image": target.image,
                    "price": target.price,
                    "reason": rec.reason,
                }
                for rec, target in result.all()
            ]

    async def list_recommendations(self, shop_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        source = aliased(Product)
        target = aliased(Product)
        async with self.get_session() as session:
            result = await session.execute(
                select(Recommendation, source, target)
                .join(source, source.id == Recommendation.source_id)
                .join(target, target.id == Recommendation.target_id)
                .where(Recommendation.shop_id == shop_id)
                .order_by(desc(Recommendation.created_at), Recommendation.id)
                .limit(limit)
                .offset(offset)
            )
            return [
                {
                    "id": rec.id,
                    "source": {"id": src.product_id, "title": src.title, "image": src.image},
                    "target": {"id": tgt.product_id, "title": tgt.title, "image": tgt.image},
                    "reason": rec.reason,
                    "impressions": rec.impressions,
                    "clicks": rec.clicks,
                }
                for rec, src, tgt in result.all()
            ]

    async def reset_shop_data(self, shop_id: str) -> Dict[str, int]:
        """Drop a shop's edges and products and mark it as never synced."""
        async with self.get_session() as session:
            async with session.begin():
                recs = await self.delete_recommendations(shop_id, session=session)
                result = await session.execute(delete(Product).where(Product.shop_id == shop_id))
                await session.execute(
                    update(Shop)
                    .where(Shop.id == shop_id)
                    .values(initial_sync_done=False, product_count=0, last_refresh_at=None)
                )
            products = result.rowcount or 0
        logger.info(f"Reset shop {shop_id}: {products} products, {recs} recommendations removed")
        return {"products": products, "recommendations": recs}

    # ---------- Sync logs ----------

    async def create_sync_log(self, shop_id: str, mode: str, started_at: Optional[datetime] = None) -> SyncLog:
        async with self.get_session() as session:
            log = SyncLog(shop_id=shop_id, mode=mode, status="started", started_at=started_at or _utcnow())
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return log

    async def finalize_sync_log(self, log_id: str, values: Dict[str, Any]) -> bool:
        """Move a log out of 'started'. Returns False if it was already terminal."""
        async with self.get_session() as session:
            stmt = (
                update(SyncLog)
                .where(SyncLog.id == log_id, SyncLog.status == "started")
                .values(**values)
            )
            result = await session.execute(stmt)
            if result.rowcount:
                await session.commit()
                return True
            await session.rollback()
            return False

    async def get_sync_log(self, log_id: str) -> Optional[SyncLog]:
        async with self.get_session() as session:
            return await session.get(SyncLog, log_id)

    async def list_sync_logs(self, shop_id: str, limit: int = 20) -> List[SyncLog]:
        async with self.get_session() as session:
            query = (
                select(SyncLog)
                .where(SyncLog.shop_id == shop_id)
                .order_by(desc(SyncLog.started_at))
                .limit(limit)
            )
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_started_sync_logs(
        self,
        *,
        started_before: Optional[datetime] = None,
        started_after: Optional[datetime] = None,
        shop_id: Optional[str] = None,
    ) -> List[SyncLog]:
        query = select(SyncLog).where(SyncLog.status == "started")
        if started_before is not None:
            query = query.where(SyncLog.started_at < started_before)
        if started_after is not None:
            query = query.where(SyncLog.started_at >= started_after)
        if shop_id:
            query = query.where(SyncLog.shop_id == shop_id)
        async with self.get_session() as session:
            result = await session.execute(query.order_by(SyncLog.started_at))
            return list(result.scalars().all())


# Global storage instance
storage = StorageService()
