#!/usr/bin/env python3
"""
Tier Resolver

Maps raw billing signals (price ids, session/price/product metadata, Stripe
statuses) onto canonical plan tiers, message allowances and the user-facing
``pro``/``free`` access tier. Everything here is pure: no I/O and no raising.
"""

import re
from enum import Enum
from typing import Any

from src.config.config import get_tier_price_table


class PlanTier(str, Enum):
    BASIC = "basic"
    MEDIUM = "medium"
    INTENSIVE = "intensive"
    TOTAL = "total"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# The one-time purchase tier: always checked out in payment mode.
ONE_TIME_TIER = PlanTier.TOTAL.value

PLAN_ALLOWANCES: dict[str, int] = {
    PlanTier.BASIC.value: 200,
    PlanTier.MEDIUM.value: 400,
    PlanTier.INTENSIVE.value: 2000,
    PlanTier.TOTAL.value: 6000,
}

TIER_ALIASES: dict[str, str] = {
    "standard": "basic",
    "standard-monthly": "basic",
    "standard_monthly": "basic",
    "standardmonthly": "basic",
    "standard-20": "basic",
    "standard20": "basic",
    "basic-monthly": "basic",
    "basic_monthly": "basic",
}

# Searched in this order within each metadata bag.
TIER_METADATA_KEYS = (
    "tier",
    "planTier",
    "plan_tier",
    "plan",
    "subscription_tier",
    "billing_tier",
)

USER_TIER_PRO = "pro"
USER_TIER_FREE = "free"

DEACTIVATING_STATUSES = frozenset({"canceled", "incomplete", "incomplete_expired", "unpaid"})
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})
PAID_STATUSES = frozenset({"paid", "complete", "completed", "succeeded"})

PRICE_ID_PATTERN = re.compile(r"^price_[A-Za-z0-9_]+$")


def canonicalize_tier(raw: Any) -> str | None:
    """
    Normalize a raw tier string.

    Unknown values are returned lower-cased rather than rejected so new tiers
    can be introduced through Stripe metadata alone.
    """
    if not isinstance(raw, str):
        return None
    normalized = raw.strip().lower()
    if not normalized:
        return None
    if normalized in TIER_ALIASES:
        return TIER_ALIASES[normalized]
    if normalized.startswith("standard"):
        return "basic"
    return normalized


def is_price_id(value: Any) -> bool:
    return isinstance(value, str) and bool(PRICE_ID_PATTERN.match(value.strip()))


def resolve_tier_price(tier: Any) -> str | None:
    """Configured Stripe price id for a tier, or None."""
    canonical = canonicalize_tier(tier)
    if not canonical:
        return None
    return get_tier_price_table().get(canonical)


def resolve_tier_from_price(price_id: Any) -> str | None:
    """Reverse lookup of the configured price table."""
    if not isinstance(price_id, str) or not price_id:
        return None
    for tier, configured in get_tier_price_table().items():
        if configured == price_id:
            return tier
    return None


def _tier_from_metadata(metadata: dict[str, Any] | None) -> str | None:
    if not metadata:
        return None
    for key in TIER_METADATA_KEYS:
        canonical = canonicalize_tier(metadata.get(key))
        if canonical:
            return canonical
    return None


def identify_tier(
    metadata: dict[str, Any] | None = None,
    price_id: str | None = None,
    price_metadata: dict[str, Any] | None = None,
    product_metadata: dict[str, Any] | None = None,
) -> str | None:
    """
    Work out the canonical tier for a purchase.

    Session/subscription metadata wins over price metadata, which wins over
    product metadata. The configured price table is the last resort.

    Returns:
        Canonical tier, or None when nothing resolves. Callers must treat None
        as "unknown" and never reset usage on it.
    """
    for bag in (metadata, price_metadata, product_metadata):
        tier = _tier_from_metadata(bag)
        if tier:
            return tier
    return canonicalize_tier(resolve_tier_from_price(price_id))


def allowance_for_tier(tier: Any) -> int | None:
    canonical = canonicalize_tier(tier)
    if not canonical:
        return None
    return PLAN_ALLOWANCES.get(canonical)


def determine_user_tier(status: str | None, mode: str | None) -> str | None:
    """
    Decide the top-level access tier from a Stripe status and checkout mode.

    Only explicit signals change the tier. Deactivating statuses are checked
    before the mode, so a canceled one-time purchase still yields ``free``.
    Ambiguous input returns None, meaning "leave the stored tier alone".
    """
    normalized_status = (status or "").strip().lower()
    normalized_mode = (mode or "").strip().lower()

    if normalized_status in DEACTIVATING_STATUSES:
        return USER_TIER_FREE

    if normalized_mode == "payment":
        return USER_TIER_PRO

    if normalized_status in ACTIVE_SUBSCRIPTION_STATUSES:
        return USER_TIER_PRO

    if normalized_status in PAID_STATUSES:
        return USER_TIER_PRO

    return None
