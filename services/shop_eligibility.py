"""Development-store detection from the Shopify plan name."""
from typing import Optional

DEV_PLAN_KEYWORDS = (
    "development",
    "partner",
    "affiliate",
    "staff",
    "trial",
    "frozen",
    "cancelled",
    "dormant",
    "test",
)

PAID_PLAN_KEYWORDS = (
    "basic",
    "shopify",
    "advanced",
    "plus",
    "unlimited",
    "professional",
)


def is_development_store(plan_name: Optional[str]) -> bool:
    """True for partner/dev/trial style plans. Paid plan names win unless they say 'development'."""
    if not plan_name:
        return False
    plan = plan_name.lower()
    if "development" not in plan and any(paid in plan for paid in PAID_PLAN_KEYWORDS):
        return False
    return any(keyword in plan for keyword in DEV_PLAN_KEYWORDS)
