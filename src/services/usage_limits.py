"""
Chat usage limits derived from a user's billing snapshot.

Read-side counterpart of the webhook processor: given a user record it works
out how many messages the user may send in the current period.
"""

import math
from typing import Any

from src.schemas.payments import UsageLimits
from src.services.tiers import USER_TIER_PRO, allowance_for_tier, canonicalize_tier
from src.utils.stripe_objects import get_path

FREE_BASE_ALLOWANCE = 10
FREE_COURTESY_ALLOWANCE = 12

ALLOWANCE_PATHS = (
    ("billing", "messageAllowance"),
    ("stripe", "messageAllowance"),
    ("messageAllowance",),
    ("billing", "message_allowance"),
    ("stripe", "message_allowance"),
)

TIER_PATHS = (
    ("tier",),
    ("planTier",),
    ("plan_tier",),
    ("plan",),
    ("billing", "planTier"),
    ("billing", "plan_tier"),
    ("billing", "tier"),
    ("billing", "plan", "tier"),
    ("billing", "plan", "key"),
    ("billing", "currentTier"),
    ("stripe", "planTier"),
    ("stripe", "plan_tier"),
    ("stripe", "tier"),
)


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return bool(value)


def extract_message_allowance(profile: dict[str, Any] | None) -> int | None:
    """First non-negative allowance found on the profile."""
    if not isinstance(profile, dict):
        return None
    for path in ALLOWANCE_PATHS:
        number = _coerce_number(get_path(profile, *path))
        if number is not None and number >= 0:
            return int(number)
    return None


def resolve_profile_tier(profile: dict[str, Any] | None) -> str | None:
    if not isinstance(profile, dict):
        return None
    for path in TIER_PATHS:
        tier = canonicalize_tier(get_path(profile, *path))
        if tier:
            return tier
    return None


def resolve_usage_limits(profile: dict[str, Any] | None) -> UsageLimits:
    """
    Work out a user's chat quota.

    An explicit allowance on the billing snapshot wins, then the allowance of
    the resolved tier. ``pro`` without an allowance is unlimited; everyone
    else gets the free allowance plus a one-off courtesy top-up.
    """
    profile = profile if isinstance(profile, dict) else {}
    tier = resolve_profile_tier(profile)
    allowance = extract_message_allowance(profile)
    courtesy_used = coerce_bool(profile.get("courtesy_used"))

    if allowance is not None and allowance > 0:
        return UsageLimits(
            base_allowance=allowance,
            courtesy_used=courtesy_used,
            message_allowance=allowance,
        )

    tier_allowance = allowance_for_tier(tier)
    if tier_allowance:
        return UsageLimits(base_allowance=tier_allowance, message_allowance=tier_allowance)

    if tier == USER_TIER_PRO:
        return UsageLimits(unlimited=True)

    return UsageLimits(
        base_allowance=FREE_BASE_ALLOWANCE,
        courtesy_allowance=FREE_COURTESY_ALLOWANCE,
        courtesy_used=courtesy_used,
    )


def remaining_messages(profile: dict[str, Any] | None) -> int | None:
    """
    Messages left in the current period, or None when unlimited.

    The courtesy allowance counts only while it has not been used.
    """
    limits = resolve_usage_limits(profile)
    if limits.unlimited:
        return None

    used = _coerce_number((profile or {}).get("exchanges_used")) or 0
    total = limits.base_allowance or 0
    if limits.courtesy_allowance and not limits.courtesy_used:
        total += limits.courtesy_allowance
    return max(total - int(used), 0)
