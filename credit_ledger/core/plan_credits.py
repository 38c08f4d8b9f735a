"""
Plan-based credit allocation configuration.

Single source of truth for how many credits each plan grants per billing
cycle, plus credit packs and reward amounts. Yearly plans grant twelve
months of credits up front.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from credit_ledger.core import config

logger = logging.getLogger(__name__)

BILLING_INTERVALS = ("month", "year")

# Monthly credit grants per plan
PLAN_CREDITS: Dict[str, Dict[str, int]] = {
    "free": {
        "monthly": 0,
        "on_signup": 30,
    },
    "pro": {
        "monthly": 500,
        "on_signup": 0,
    },
    "proplus": {
        "monthly": 900,
        "on_signup": 0,
    },
}

PLAN_NAMES: Dict[str, str] = {
    "free": "Free",
    "pro": "Pro",
    "proplus": "Pro+",
}

# One-time credit packs
CREDIT_PACKS: Dict[str, int] = {
    "pack-1000": 1000,
    "pack-2000": 2000,
    "pack-5000": 5000,
    "pack-10000": 10000,
}

REWARDS = {
    "checkin_daily": 2,
    "checkin_weekly_bonus": 5,
    "checkin_streak_days": 7,
    "referral": 10,
    "social_share": 5,
}


@dataclass
class PlanCreditInfo:
    """Credit allocation resolved from a plan, price or product identifier."""
    plan_id: Optional[str]
    interval: str
    amount: int
    identifier: str

    @property
    def is_yearly(self) -> bool:
        return self.interval == "year"


def _build_price_mappings() -> Dict[str, Tuple[str, str]]:
    """Build price/product identifier -> (plan, interval) from environment config."""
    candidates = [
        (config.STRIPE_PRICE_PRO_MONTHLY, "pro", "month"),
        (config.STRIPE_PRICE_PRO_YEARLY, "pro", "year"),
        (config.STRIPE_PRICE_PROPLUS_MONTHLY, "proplus", "month"),
        (config.STRIPE_PRICE_PROPLUS_YEARLY, "proplus", "year"),
        (config.CREEM_PRICE_PRO_MONTHLY, "pro", "month"),
        (config.CREEM_PRICE_PRO_YEARLY, "pro", "year"),
        (config.CREEM_PRICE_PROPLUS_MONTHLY, "proplus", "month"),
        (config.CREEM_PRICE_PROPLUS_YEARLY, "proplus", "year"),
        (config.CREEM_PRO_PRODUCT_KEY_MONTHLY, "pro", "month"),
        (config.CREEM_PRO_PRODUCT_KEY_YEARLY, "pro", "year"),
        (config.CREEM_PROPLUS_PRODUCT_KEY_MONTHLY, "proplus", "month"),
        (config.CREEM_PROPLUS_PRODUCT_KEY_YEARLY, "proplus", "year"),
    ]
    return {identifier: (plan, interval) for identifier, plan, interval in candidates if identifier}


PRICE_ID_TO_PLAN = _build_price_mappings()


def normalize_interval(value: Optional[str]) -> Optional[str]:
    """Map provider interval spellings (monthly, annual, every-year) onto month/year."""
    if not value:
        return None
    lower = value.lower()
    if "year" in lower or lower in ("annual", "annually"):
        return "year"
    if "month" in lower:
        return "month"
    return None


def resolve_plan(identifier: Optional[str], interval: Optional[str] = None) -> Optional[Tuple[str, str]]:
    """
    Resolve a plan id, price id or product key to (plan_id, interval).

    An explicit interval overrides the one implied by a price id.
    """
    if not identifier:
        return None

    key = identifier.lower()
    if key in PLAN_CREDITS:
        return key, normalize_interval(interval) or "month"

    mapped = PRICE_ID_TO_PLAN.get(identifier)
    if mapped:
        plan_id, implied_interval = mapped
        return plan_id, normalize_interval(interval) or implied_interval

    return None


def get_credits_for_plan(identifier: str, interval: Optional[str] = None) -> PlanCreditInfo:
    """
    Calculate the credit allocation for a plan/price identifier.

    Unknown identifiers resolve to zero credits rather than failing.
    """
    resolved = resolve_plan(identifier, interval)
    if not resolved:
        logger.info(f"No plan mapping for identifier={identifier}")
        return PlanCreditInfo(
            plan_id=None,
            interval=normalize_interval(interval) or "month",
            amount=0,
            identifier=identifier,
        )

    plan_id, effective_interval = resolved
    monthly = PLAN_CREDITS[plan_id].get("monthly", 0)
    amount = monthly * 12 if effective_interval == "year" else monthly

    return PlanCreditInfo(
        plan_id=plan_id,
        interval=effective_interval,
        amount=amount,
        identifier=identifier,
    )


def get_signup_bonus() -> int:
    return PLAN_CREDITS["free"].get("on_signup", 0)


def get_pack_credits(pack_id: str) -> Optional[int]:
    return CREDIT_PACKS.get(pack_id)


def format_plan_name(plan_id: Optional[str], fallback: str) -> str:
    if plan_id and plan_id in PLAN_NAMES:
        return PLAN_NAMES[plan_id]
    return fallback.replace("_", " ").title()
