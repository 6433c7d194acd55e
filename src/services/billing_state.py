#!/usr/bin/env python3
"""
Billing state projection
The single write path from a reconciled Stripe event to a user record
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.db.users import upsert_user_fields
from src.services.tiers import canonicalize_tier, determine_user_tier

logger = logging.getLogger(__name__)

# Epoch seconds of the newest applied customer.subscription.* event
SUBSCRIPTION_EVENT_COLUMN = "subscription_event_created"


def is_subscription_event(event_type: str | None) -> bool:
    return bool(event_type) and event_type.startswith("customer.subscription.")


@dataclass
class PlanUpdate:
    """Everything a handler derived from one Stripe event."""

    uid: str | None
    event_id: str | None
    event_type: str | None
    customer_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None
    tier: str | None = None
    mode: str | None = None
    status: str | None = None
    current_period_end: int | None = None
    message_allowance: int | None = None
    reset_usage: bool = False
    event_created: int | None = None


def epoch_to_iso(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=UTC).isoformat()


def iso_to_epoch(value: Any) -> int | None:
    """Inverse of ``epoch_to_iso`` for values read back from a user record."""
    if isinstance(value, int | float) and not isinstance(value, bool):
        return int(value) if value > 0 else None
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp())


def _lower_or_none(value: str | None) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def _allowance(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def build_plan_fields(update: PlanUpdate, now: datetime | None = None) -> dict[str, Any]:
    """
    Build the full set of columns written for ``update``.

    The ``stripe`` and ``billing`` snapshots are always complete so tier and
    allowance can never disagree. ``tier`` is only included when the status
    gives an explicit signal, and the usage counters only on a reset.
    """
    timestamp = (now or datetime.now(UTC)).isoformat()
    tier = canonicalize_tier(update.tier)
    mode = _lower_or_none(update.mode)
    status = _lower_or_none(update.status)
    period_end = epoch_to_iso(update.current_period_end)
    allowance = _allowance(update.message_allowance)

    stripe_state = {
        "customerId": update.customer_id or None,
        "subscriptionId": update.subscription_id or None,
        "priceId": update.price_id or None,
        "productId": update.product_id or None,
        "planTier": tier,
        "mode": mode,
        "status": status,
        "currentPeriodEnd": period_end,
        "messageAllowance": allowance,
        "lastEventId": update.event_id,
        "lastEventType": update.event_type,
        "updatedAt": timestamp,
    }
    billing_state = {
        "status": status,
        "tier": tier,
        "planTier": tier,
        "mode": mode,
        "stripeCustomerId": update.customer_id or None,
        "stripeSubscriptionId": update.subscription_id or None,
        "stripePriceId": update.price_id or None,
        "stripeProductId": update.product_id or None,
        "messageAllowance": allowance,
        "currentPeriodEnd": period_end,
        "lastEventId": update.event_id,
        "lastEventType": update.event_type,
        "updatedAt": timestamp,
    }

    fields: dict[str, Any] = {
        "stripe": stripe_state,
        "billing": billing_state,
        "updated_at": timestamp,
    }

    # Kept outside the snapshots so invoice and checkout events do not clear it
    if is_subscription_event(update.event_type) and update.event_created:
        fields[SUBSCRIPTION_EVENT_COLUMN] = update.event_created

    user_tier = determine_user_tier(status, mode)
    if user_tier:
        fields["tier"] = user_tier

    if update.reset_usage:
        fields["exchanges_used"] = 0
        fields["courtesy_used"] = False
        fields["last_billing_reset_at"] = timestamp

    return fields


def apply_plan_update(update: PlanUpdate) -> bool:
    """
    Write a reconciled plan to the user record as one atomic merge.

    Returns:
        True if written, False when no user could be resolved (nothing is
        written in that case)
    """
    if not update.uid:
        logger.warning(
            f"Stripe webhook could not resolve user "
            f"(event: {update.event_id}, type: {update.event_type}, "
            f"customer: {update.customer_id}, subscription: {update.subscription_id})",
            extra={
                "event_id": update.event_id,
                "event_type": update.event_type,
                "customer_id": update.customer_id,
                "subscription_id": update.subscription_id,
            },
        )
        return False

    fields = build_plan_fields(update)
    upsert_user_fields(update.uid, fields)
    logger.info(
        f"Applied plan update for user {update.uid}: tier={fields['billing']['tier']} "
        f"status={fields['billing']['status']} reset_usage={update.reset_usage}",
        extra={"event_id": update.event_id, "user_id": update.uid},
    )
    return True
