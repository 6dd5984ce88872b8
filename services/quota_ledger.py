"""
Quota Ledger
Durable counters that gate sync runs and recommendation queries:

* the global daily token counter shared by every free-tier shop
* per shop, a daily token counter and a monthly refresh counter whose month
  is anchored on the subscription start day
* per shop, a daily query API call counter

Each counter is stored next to the key it was last reset against (a UTC date
or a cycle key). Reads treat a stale key as a zero count. Writes lock the row
and compute the post-reset value in SQL, so concurrent writers never lose an
increment.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import AsyncSessionLocal, GLOBAL_QUOTA_ID, GlobalQuota, Shop
from services.errors import RateLimitExceeded
from services.storage import dialect_insert
from settings import PipelineSettings, load_pipeline_settings
from utils import retry_async

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _day_in_month(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def current_cycle_start(anchor: Optional[datetime], now: datetime) -> date:
    """Most recent date on or before ``now`` whose day matches the anchor's day.

    Anchor days past the end of a short month land on that month's last day.
    Without an anchor the cycle is the calendar month.
    """
    today = as_utc(now).date()
    if anchor is None:
        return today.replace(day=1)
    anchor_day = as_utc(anchor).day
    start = _day_in_month(today.year, today.month, anchor_day)
    if start > today:
        year, month = _shift_month(today.year, today.month, -1)
        start = _day_in_month(year, month, anchor_day)
    return start


def next_cycle_start(anchor: Optional[datetime], now: datetime) -> date:
    start = current_cycle_start(anchor, now)
    year, month = _shift_month(start.year, start.month, 1)
    if anchor is None:
        return date(year, month, 1)
    return _day_in_month(year, month, as_utc(anchor).day)


def cycle_key(anchor: Optional[datetime], now: datetime) -> str:
    """Key stored next to the refresh counter: the cycle's first day, ``YYYY-MM-DD``."""
    return current_cycle_start(anchor, now).isoformat()


def next_utc_midnight(now: datetime) -> datetime:
    return _midnight(as_utc(now).date() + timedelta(days=1))


@dataclass(frozen=True)
class RefreshStatus:
    limit: int
    used: int
    remaining: int
    next_refresh_at: datetime
    cycle: str

    @property
    def can_refresh(self) -> bool:
        return self.remaining > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "nextRefreshAt": self.next_refresh_at.isoformat(),
        }


def refresh_status(shop: Shop, now: datetime, settings: Optional[PipelineSettings] = None) -> RefreshStatus:
    settings = settings or load_pipeline_settings()
    anchor = as_utc(shop.subscription_started_at)
    key = cycle_key(anchor, now)
    limit = settings.refresh_limit(shop.plan)
    used = (shop.refresh_count or 0) if shop.refresh_cycle == key else 0
    return RefreshStatus(
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        next_refresh_at=_midnight(next_cycle_start(anchor, now)),
        cycle=key,
    )


@dataclass(frozen=True)
class TokenBudget:
    quota: int
    used: int
    reset_at: datetime
    scope: str = "global"

    @property
    def remaining(self) -> int:
        return max(0, self.quota - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.quota

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokensRemaining": self.remaining,
            "quota": self.quota,
            "tokensUsed": self.used,
            "quotaResetDate": self.reset_at.isoformat(),
        }


@dataclass(frozen=True)
class ApiUsage:
    limit: int
    used: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


def shop_token_budget(shop: Shop, now: datetime) -> TokenBudget:
    today = as_utc(now).date()
    used = (shop.tokens_used_today or 0) if shop.token_reset_date == today else 0
    return TokenBudget(
        quota=shop.daily_token_quota,
        used=used,
        reset_at=next_utc_midnight(now),
        scope="shop",
    )


class QuotaLedger:
    """Reads and debits the global and per-shop counters."""

    def __init__(self, session_factory=None, settings: Optional[PipelineSettings] = None):
        self._session_factory = session_factory or AsyncSessionLocal
        self._settings = settings

    @property
    def settings(self) -> PipelineSettings:
        return self._settings or load_pipeline_settings()

    async def _ensure_global_row(self, session: AsyncSession, today: date) -> None:
        stmt = dialect_insert(session, GlobalQuota).values(
            id=GLOBAL_QUOTA_ID,
            daily_token_quota=self.settings.global_daily_token_quota,
            tokens_used_today=0,
            quota_reset_date=today,
        )
        await session.execute(stmt.on_conflict_do_nothing(index_elements=[GlobalQuota.id]))

    # ---------- global daily tokens ----------

    @retry_async(max_retries=2, base_delay=0.2)
    async def check_global_tokens(self, now: Optional[datetime] = None) -> TokenBudget:
        """Current global budget in its own transaction."""
        async with self._session_factory() as session:
            async with session.begin():
                return await self.global_budget(session, now)

    async def global_budget(self, session: AsyncSession, now: Optional[datetime] = None) -> TokenBudget:
        """Global budget as seen by the caller's transaction.

        Writes the daily reset lazily when the stored date is stale.
        """
        now = now or utcnow()
        today = as_utc(now).date()
        await self._ensure_global_row(session, today)
        row = (
            await session.execute(
                select(GlobalQuota.daily_token_quota, GlobalQuota.tokens_used_today, GlobalQuota.quota_reset_date)
                .where(GlobalQuota.id == GLOBAL_QUOTA_ID)
            )
        ).one()
        used = row.tokens_used_today or 0
        if row.quota_reset_date != today:
            # Guarded so a debit already written for today survives
            await session.execute(
                update(GlobalQuota)
                .where(GlobalQuota.id == GLOBAL_QUOTA_ID)
                .where((GlobalQuota.quota_reset_date.is_(None)) | (GlobalQuota.quota_reset_date != today))
                .values(tokens_used_today=0, quota_reset_date=today)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"Global token quota reset for {today.isoformat()} (was {used})")
            used = 0
        return TokenBudget(quota=row.daily_token_quota, used=used, reset_at=next_utc_midnight(now))

    def check_shop_tokens(self, shop: Shop, now: Optional[datetime] = None) -> TokenBudget:
        """Per-shop daily budget from the row already loaded; a stale reset date reads as zero."""
        return shop_token_budget(shop, now or utcnow())

    async def set_global_quota(self, quota: int, now: Optional[datetime] = None) -> TokenBudget:
        now = now or utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                await self._ensure_global_row(session, as_utc(now).date())
                await session.execute(
                    update(GlobalQuota)
                    .where(GlobalQuota.id == GLOBAL_QUOTA_ID)
                    .values(daily_token_quota=quota)
                    .execution_options(synchronize_session=False)
                )
        logger.info(f"Global daily token quota set to {quota}")
        return await self.check_global_tokens(now)

    async def reset_global_tokens(self, now: Optional[datetime] = None) -> TokenBudget:
        now = now or utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(GlobalQuota)
                    .where(GlobalQuota.id == GLOBAL_QUOTA_ID)
                    .values(tokens_used_today=0, quota_reset_date=as_utc(now).date())
                    .execution_options(synchronize_session=False)
                )
        return await self.check_global_tokens(now)

    # ---------- debits inside the sync unit of work ----------

    async def debit_tokens(
        self, session: AsyncSession, shop_id: str, tokens: int, now: Optional[datetime] = None
    ) -> None:
        """Add ``tokens`` to the global and shop counters inside the caller's transaction.

        Lock order is shop row then global row, matching the sync unit of work.
        """
        if tokens <= 0:
            return
        today = as_utc(now or utcnow()).date()

        await session.execute(select(Shop.id).where(Shop.id == shop_id).with_for_update())
        await session.execute(
            update(Shop)
            .where(Shop.id == shop_id)
            .values(
                tokens_used_today=case(
                    (Shop.token_reset_date == today, Shop.tokens_used_today + tokens),
                    else_=tokens,
                ),
                token_reset_date=today,
            )
            .execution_options(synchronize_session=False)
        )

        await self._ensure_global_row(session, today)
        await session.execute(
            select(GlobalQuota.id).where(GlobalQuota.id == GLOBAL_QUOTA_ID).with_for_update()
        )
        await session.execute(
            update(GlobalQuota)
            .where(GlobalQuota.id == GLOBAL_QUOTA_ID)
            .values(
                tokens_used_today=case(
                    (GlobalQuota.quota_reset_date == today, GlobalQuota.tokens_used_today + tokens),
                    else_=tokens,
                ),
                quota_reset_date=today,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Debited {tokens} tokens (shop: {shop_id})")

    async def increment_refresh(self, session: AsyncSession, shop_id: str, cycle: str) -> None:
        """Bump the refresh counter, restarting it at 1 when the stored cycle is stale."""
        await session.execute(
            update(Shop)
            .where(Shop.id == shop_id)
            .values(
                refresh_count=case(
                    (Shop.refresh_cycle == cycle, Shop.refresh_count + 1),
                    else_=1,
                ),
                refresh_cycle=cycle,
            )
            .execution_options(synchronize_session=False)
        )

    # ---------- per-shop token admin ----------

    async def set_shop_token_quota(self, shop_id: str, quota: int) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Shop)
                    .where(Shop.id == shop_id)
                    .values(daily_token_quota=quota)
                    .execution_options(synchronize_session=False)
                )
        return bool(result.rowcount)

    async def reset_shop_tokens(self, shop_id: str, now: Optional[datetime] = None) -> bool:
        today = as_utc(now or utcnow()).date()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Shop)
                    .where(Shop.id == shop_id)
                    .values(tokens_used_today=0, token_reset_date=today)
                    .execution_options(synchronize_session=False)
                )
        return bool(result.rowcount)

    async def reset_all_free_tokens(self, now: Optional[datetime] = None) -> int:
        today = as_utc(now or utcnow()).date()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Shop)
                    .where(Shop.plan == "free")
                    .values(tokens_used_today=0, token_reset_date=today)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount or 0

    # ---------- query API usage ----------

    async def consume_api_call(self, shop: Shop, now: Optional[datetime] = None) -> ApiUsage:
        """Count one recommendation query against the shop's daily plan limit."""
        now = now or utcnow()
        today = as_utc(now).date()
        limit = self.settings.api_limit(shop.plan)
        reset_at = next_utc_midnight(now)

        async with self._session_factory() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(Shop.api_calls_today, Shop.api_calls_date)
                        .where(Shop.id == shop.id)
                        .with_for_update()
                    )
                ).one()
                current = (row.api_calls_today or 0) if row.api_calls_date == today else 0
                if current >= limit:
                    raise RateLimitExceeded(
                        f"Daily API limit exceeded ({current}/{limit})",
                        details={"limit": limit, "used": current, "resetAt": reset_at},
                    )
                await session.execute(
                    update(Shop)
                    .where(Shop.id == shop.id)
                    .values(
                        api_calls_today=case(
                            (Shop.api_calls_date == today, Shop.api_calls_today + 1),
                            else_=1,
                        ),
                        api_calls_date=today,
                    )
                    .execution_options(synchronize_session=False)
                )
        return ApiUsage(limit=limit, used=current + 1, reset_at=reset_at)


quota_ledger = QuotaLedger()
