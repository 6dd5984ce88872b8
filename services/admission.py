"""
Admission control for sync runs.

Gates, evaluated in order before anything is written:

1. sync enabled (shop kill switch and the global ``sync.enabled`` flag)
2. eligibility (development stores need to be whitelisted)
3. global daily token budget (free tier)
4. shop daily token budget (free tier)
5. refresh cycle limit (refresh mode only)

Admission is advisory for the token budgets: the debit that actually lands
happens inside the sync unit of work once real usage is known.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from database import Shop
from services.errors import (
    DevelopmentStoreError,
    RefreshLimitExceededError,
    SyncDisabledError,
    TokenQuotaExceededError,
)
from services.feature_flags import feature_flags
from services.quota_ledger import (
    QuotaLedger,
    RefreshStatus,
    TokenBudget,
    refresh_status,
)
from services.sync_mode import SyncMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    mode: SyncMode
    refresh: RefreshStatus
    global_tokens: Optional[TokenBudget] = None
    shop_tokens: Optional[TokenBudget] = None


def refresh_limit_error(status: RefreshStatus, plan: str) -> RefreshLimitExceededError:
    return RefreshLimitExceededError(
        "Refresh rate limit exceeded",
        details={
            "limit": status.limit,
            "used": status.used,
            "remaining": status.remaining,
            "nextRefreshAt": status.next_refresh_at,
            "plan": plan,
        },
    )


class AdmissionController:
    def __init__(self, ledger: QuotaLedger):
        self.ledger = ledger

    async def admit(self, shop: Shop, mode: SyncMode, now: datetime) -> Admission:
        if not shop.is_sync_enabled or not feature_flags.sync_enabled(shop.id):
            raise SyncDisabledError("Sync is disabled for this shop. Please contact support.")

        if shop.is_development_store and not shop.is_whitelisted:
            raise DevelopmentStoreError(
                "Development stores must be whitelisted before syncing.",
                details={"isDevelopmentStore": True, "isWhitelisted": False, "requiresWhitelist": True},
            )

        global_tokens = None
        shop_tokens = None
        if (shop.plan or "free") == "free":
            global_tokens = await self.ledger.check_global_tokens(now)
            if global_tokens.exhausted:
                raise TokenQuotaExceededError(
                    f"Daily token quota exceeded ({global_tokens.used}/{global_tokens.quota}). "
                    "Quota resets at midnight UTC.",
                    details={"tokenQuotaExceeded": True, "scope": "global", **global_tokens.to_dict()},
                )
            shop_tokens = self.ledger.check_shop_tokens(shop, now)
            if shop_tokens.exhausted:
                raise TokenQuotaExceededError(
                    f"Shop daily token quota exceeded ({shop_tokens.used}/{shop_tokens.quota}). "
                    "Quota resets at midnight UTC.",
                    details={"tokenQuotaExceeded": True, "scope": "shop", **shop_tokens.to_dict()},
                )

        status = refresh_status(shop, now, self.ledger.settings)
        if mode is SyncMode.REFRESH and not status.can_refresh:
            raise refresh_limit_error(status, shop.plan)

        logger.info(
            f"Admitted {mode.value} sync for {shop.id} (plan={shop.plan}, "
            f"refresh {status.used}/{status.limit}"
            f"{', global tokens remaining=' + str(global_tokens.remaining) if global_tokens else ''})"
        )
        return Admission(mode=mode, refresh=status, global_tokens=global_tokens, shop_tokens=shop_tokens)
