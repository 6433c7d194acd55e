#!/usr/bin/env python3
"""
Stripe Webhook Processor
Verifies, deduplicates and reconciles Stripe webhook events into user billing state
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

import stripe

from src.config.stripe_config import get_stripe, get_webhook_secret
from src.db.users import find_user_by_stripe_customer, get_user
from src.db.webhook_events import claim_event, mark_event_failed, mark_event_processed
from src.services.billing_state import (
    SUBSCRIPTION_EVENT_COLUMN,
    PlanUpdate,
    apply_plan_update,
    iso_to_epoch,
)
from src.services.tiers import allowance_for_tier, identify_tier
from src.utils.exceptions import WebhookSignatureError
from src.utils.sentry_context import capture_payment_error
from src.utils.stripe_objects import (
    current_period_end,
    event_created,
    extract_uid,
    first_line_price,
    first_subscription_price,
    get_field,
    get_id,
    get_metadata,
    get_path,
    invoice_period_end,
    invoice_subscription_id,
    price_product_id,
    price_product_metadata,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = ["items.data.price", "items.data.price.product"]
CHECKOUT_SESSION_EXPAND = ["line_items.data.price", "line_items.data.price.product"]

RESULT_PROCESSED = "processed"
RESULT_IGNORED = "ignored"
RESULT_DUPLICATE = "duplicate"


class WebhookEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def parse_event_type(raw: Any) -> WebhookEventType | None:
    try:
        return WebhookEventType(raw)
    except ValueError:
        return None


# ==================== Signature verification ====================


def verify_webhook_signature(raw_body: bytes | str, signature_header: str | None):
    """
    Verify a webhook payload against the configured signing secret.

    Returns:
        The verified ``stripe.Event``

    Raises:
        WebhookSignatureError: Missing header, missing secret or bad signature
    """
    if not signature_header:
        raise WebhookSignatureError("Missing stripe-signature header", code="missing_signature")

    webhook_secret = get_webhook_secret()
    if not webhook_secret:
        logger.error("Webhook secret not configured - rejecting webhook")
        raise WebhookSignatureError(
            "Webhook signing secret is not configured", code="missing_webhook_secret"
        )

    payload = raw_body if isinstance(raw_body, bytes) else (raw_body or "").encode("utf-8")
    try:
        return stripe.Webhook.construct_event(payload, signature_header, webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid webhook signature: {e}")
        raise WebhookSignatureError() from e
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise WebhookSignatureError("Invalid webhook payload") from e


# ==================== Lookups ====================


def _retrieve_subscription(subscription_id: str | None, context: dict[str, Any]) -> Any:
    """Expanded subscription, or None when absent or not retrievable."""
    if not subscription_id:
        return None
    try:
        return get_stripe().Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)
    except stripe.StripeError as e:
        logger.warning(
            f"Failed to retrieve subscription {subscription_id}: {e}",
            extra={"subscription_id": subscription_id, **context},
        )
        return None


def _uid_from_customer(customer_id: str | None) -> str | None:
    found = find_user_by_stripe_customer(customer_id)
    return found["uid"] if found else None


def _event_object(event: Any) -> Any:
    return get_path(event, "data", "object")


def _price_details(price: Any) -> tuple[str | None, str | None, dict | None, dict | None]:
    """(price_id, product_id, price_metadata, product_metadata)"""
    if price is None:
        return None, None, None, None
    return (
        get_id(price),
        price_product_id(price),
        get_metadata(price),
        price_product_metadata(price),
    )


# ==================== Handlers ====================


def handle_checkout_session(event: Any) -> PlanUpdate | None:
    session = _event_object(event)
    session_id = get_field(session, "id")
    if not session_id:
        return None

    expanded = session
    try:
        expanded = get_stripe().checkout.Session.retrieve(session_id, expand=CHECKOUT_SESSION_EXPAND)
    except stripe.StripeError as e:
        logger.warning(
            f"Failed to retrieve checkout session details for {session_id}: {e}",
            extra={"session_id": session_id},
        )

    metadata = {**get_metadata(session), **get_metadata(expanded)}
    customer_id = get_id(get_field(expanded, "customer")) or get_id(get_field(session, "customer"))

    subscription = _retrieve_subscription(
        get_id(get_field(expanded, "subscription")), {"session_id": session_id}
    )
    if subscription is not None:
        metadata.update(get_metadata(subscription))

    uid = (
        extract_uid(metadata)
        or get_field(expanded, "client_reference_id")
        or get_field(session, "client_reference_id")
        or _uid_from_customer(customer_id)
    )

    price = first_subscription_price(subscription) or first_line_price(expanded)
    price_id, product_id, price_metadata, product_metadata = _price_details(price)
    tier = identify_tier(metadata, price_id, price_metadata, product_metadata)

    mode = (
        get_field(expanded, "mode")
        or get_field(session, "mode")
        or ("subscription" if subscription is not None else "payment")
    )
    status = (
        get_field(subscription, "status") or get_field(expanded, "payment_status") or "active"
    )
    reset_usage = mode == "payment" or status.lower() in {"paid", "active"}

    return PlanUpdate(
        uid=uid,
        event_id=get_field(event, "id"),
        event_type=get_field(event, "type"),
        customer_id=customer_id,
        subscription_id=get_id(subscription),
        price_id=price_id,
        product_id=product_id,
        tier=tier,
        mode=mode,
        status=status,
        current_period_end=current_period_end(subscription),
        message_allowance=allowance_for_tier(tier),
        reset_usage=reset_usage,
        event_created=event_created(event),
    )


def handle_invoice_payment_succeeded(event: Any) -> PlanUpdate | None:
    invoice = _event_object(event)
    if invoice is None:
        return None

    customer_id = get_id(get_field(invoice, "customer"))
    subscription_id = invoice_subscription_id(invoice)
    metadata = get_metadata(invoice)

    subscription = _retrieve_subscription(subscription_id, {"invoice_id": get_field(invoice, "id")})
    if subscription is not None:
        metadata.update(get_metadata(subscription))

    uid = extract_uid(metadata) or _uid_from_customer(customer_id)

    price = first_subscription_price(subscription) or first_line_price(invoice, "lines")
    price_id, product_id, price_metadata, product_metadata = _price_details(price)
    tier = identify_tier(metadata, price_id, price_metadata, product_metadata)

    status = get_field(subscription, "status") or get_field(invoice, "status") or "paid"

    return PlanUpdate(
        uid=uid,
        event_id=get_field(event, "id"),
        event_type=get_field(event, "type"),
        customer_id=customer_id,
        subscription_id=get_id(subscription) or subscription_id,
        price_id=price_id,
        product_id=product_id,
        tier=tier,
        mode="subscription" if subscription is not None else "payment",
        status=status,
        current_period_end=current_period_end(subscription) or invoice_period_end(invoice),
        message_allowance=allowance_for_tier(tier),
        reset_usage=True,
        event_created=event_created(event),
    )


def handle_invoice_payment_failed(event: Any) -> PlanUpdate | None:
    """
    Mark the subscription past_due while keeping the last known plan.

    Price, product, tier and allowance are carried over from the stored
    record since a failed invoice says nothing new about the plan.
    """
    invoice = _event_object(event)
    if invoice is None:
        return None

    customer_id = get_id(get_field(invoice, "customer"))
    found = find_user_by_stripe_customer(customer_id)
    uid = extract_uid(get_metadata(invoice)) or (found["uid"] if found else None)

    # Another user's plan must never be copied onto this uid
    existing = found["data"] if found and found["uid"] == uid else None
    if existing is None and uid:
        existing = get_user(uid)
    existing = existing or {}

    last_stripe = existing.get("stripe") or {}
    last_billing = existing.get("billing") or {}

    allowance = last_stripe.get("messageAllowance")
    if allowance is None:
        allowance = last_billing.get("messageAllowance")

    return PlanUpdate(
        uid=uid,
        event_id=get_field(event, "id"),
        event_type=get_field(event, "type"),
        customer_id=customer_id or last_stripe.get("customerId"),
        subscription_id=invoice_subscription_id(invoice) or last_stripe.get("subscriptionId"),
        price_id=last_stripe.get("priceId") or last_billing.get("stripePriceId"),
        product_id=last_stripe.get("productId") or last_billing.get("stripeProductId"),
        tier=last_stripe.get("planTier") or last_billing.get("planTier"),
        mode="subscription",
        status="past_due",
        current_period_end=iso_to_epoch(
            last_stripe.get("currentPeriodEnd") or last_billing.get("currentPeriodEnd")
        ),
        message_allowance=allowance,
        reset_usage=False,
        event_created=event_created(event),
    )


def _subscription_update(event: Any, *, deleted: bool) -> PlanUpdate | None:
    subscription = _event_object(event)
    if subscription is None:
        return None

    customer_id = get_id(get_field(subscription, "customer"))
    metadata = get_metadata(subscription)
    uid = extract_uid(metadata) or _uid_from_customer(customer_id)

    price_id, product_id, price_metadata, product_metadata = _price_details(
        first_subscription_price(subscription)
    )
    tier = identify_tier(metadata, price_id, price_metadata, product_metadata)

    return PlanUpdate(
        uid=uid,
        event_id=get_field(event, "id"),
        event_type=get_field(event, "type"),
        customer_id=customer_id,
        subscription_id=get_id(subscription),
        price_id=price_id,
        product_id=product_id,
        tier=tier,
        mode="subscription",
        status="canceled" if deleted else get_field(subscription, "status"),
        current_period_end=current_period_end(subscription),
        message_allowance=None if deleted else allowance_for_tier(tier),
        reset_usage=False,
        event_created=event_created(event),
    )


def handle_subscription_updated(event: Any) -> PlanUpdate | None:
    return _subscription_update(event, deleted=False)


def handle_subscription_deleted(event: Any) -> PlanUpdate | None:
    return _subscription_update(event, deleted=True)


EVENT_HANDLERS: dict[WebhookEventType, Callable[[Any], PlanUpdate | None]] = {
    WebhookEventType.CHECKOUT_SESSION_COMPLETED: handle_checkout_session,
    WebhookEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: handle_checkout_session,
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    WebhookEventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    WebhookEventType.SUBSCRIPTION_CREATED: handle_subscription_updated,
    WebhookEventType.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    WebhookEventType.SUBSCRIPTION_DELETED: handle_subscription_deleted,
}

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        WebhookEventType.SUBSCRIPTION_CREATED,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        WebhookEventType.SUBSCRIPTION_DELETED,
    }
)


# ==================== Processing loop ====================


def is_stale_subscription_event(update: PlanUpdate) -> bool:
    """
    True when the user already reflects a newer subscription event.

    Stripe does not guarantee delivery order, so an ``updated`` event arriving
    after ``deleted`` would otherwise resurrect a canceled plan.
    """
    if not update.uid or not update.event_created:
        return False
    existing = get_user(update.uid)
    if not existing:
        return False
    last_applied = existing.get(SUBSCRIPTION_EVENT_COLUMN)
    if not isinstance(last_applied, int | float) or isinstance(last_applied, bool):
        return False
    if update.event_created < last_applied:
        return True

    # created has one-second resolution: a same-second event must not undo a cancellation
    if update.event_created == last_applied and update.status != "canceled":
        stored_status = (existing.get("billing") or {}).get("status")
        return stored_status == "canceled"
    return False


def process_event(event: Any) -> str:
    """
    Dispatch a verified event to its handler and apply the resulting update.

    Returns:
        RESULT_PROCESSED or RESULT_IGNORED
    """
    event_id = get_field(event, "id")
    raw_type = get_field(event, "type")
    event_type = parse_event_type(raw_type)

    if event_type is None:
        logger.debug(f"Stripe webhook ignored: {raw_type} ({event_id})")
        return RESULT_IGNORED

    update = EVENT_HANDLERS[event_type](event)
    if update is None:
        logger.debug(f"Stripe webhook {event_id} carried no object; nothing to apply")
        return RESULT_IGNORED

    if event_type in SUBSCRIPTION_EVENT_TYPES and is_stale_subscription_event(update):
        logger.info(
            f"Skipping out-of-order {raw_type} ({event_id}) for user {update.uid}",
            extra={"event_id": event_id, "event_type": raw_type, "user_id": update.uid},
        )
        return RESULT_IGNORED

    apply_plan_update(update)
    return RESULT_PROCESSED


def handle_webhook_event(event: Any) -> str:
    """
    Process a verified Stripe event exactly once.

    The event record is claimed before any side effect; a second delivery of
    the same id returns RESULT_DUPLICATE without touching user state. Any
    failure marks the record failed and is re-raised.

    Returns:
        RESULT_PROCESSED, RESULT_IGNORED or RESULT_DUPLICATE
    """
    event_id = get_field(event, "id")
    event_type = get_field(event, "type")
    log_extra = {"event_id": event_id, "event_type": event_type}

    if not claim_event(event_id, event_type, event_created(event)):
        logger.info(f"Stripe webhook duplicate: {event_type} ({event_id})", extra=log_extra)
        return RESULT_DUPLICATE

    try:
        result = process_event(event)
        mark_event_processed(event_id)
        return result
    except Exception as e:
        try:
            mark_event_failed(event_id, str(e) or type(e).__name__)
        except Exception as mark_error:
            logger.warning(f"Could not mark webhook event {event_id} failed: {mark_error}")

        logger.error(
            f"Stripe webhook handler error for {event_type} ({event_id}): {e}",
            exc_info=True,
            extra=log_extra,
        )
        capture_payment_error(
            e, operation="webhook", details={"event_id": event_id, "event_type": event_type}
        )
        raise
