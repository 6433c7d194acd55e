#!/usr/bin/env python3
"""
Checkout and Billing Portal Sessions
Builds Stripe Checkout and Customer Portal sessions from a purchase intent
"""

import json
import logging
import math
from typing import Any

import stripe

from src.config.config import Config
from src.config.stripe_config import get_stripe
from src.services.tiers import (
    ONE_TIME_TIER,
    canonicalize_tier,
    identify_tier,
    is_price_id,
    resolve_tier_from_price,
    resolve_tier_price,
)
from src.utils.exceptions import (
    CustomerNotFoundError,
    InvalidPriceError,
    InvalidTierError,
    MissingIdentityError,
    from_stripe_error,
)
from src.utils.sentry_context import capture_payment_error
from src.utils.stripe_objects import extract_uid, get_field, get_metadata, price_product_id

logger = logging.getLogger(__name__)

# Stripe metadata limits
METADATA_KEY_MAX_LENGTH = 40
METADATA_VALUE_MAX_LENGTH = 500

MAX_QUANTITY = 999


def sanitize_metadata(metadata: dict[str, Any] | None) -> dict[str, str]:
    """
    Make metadata acceptable to Stripe.

    None keys/values and empty keys are dropped, non-string values are
    stringified (JSON for containers) and keys/values are truncated to
    Stripe's limits.
    """
    sanitized: dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if key is None or value is None:
            continue
        key_str = str(key).strip()
        if not key_str:
            continue

        if isinstance(value, str):
            value_str = value
        elif isinstance(value, bool):
            value_str = "true" if value else "false"
        elif isinstance(value, int | float):
            value_str = str(value)
        else:
            value_str = json.dumps(value, default=str)

        sanitized[key_str[:METADATA_KEY_MAX_LENGTH]] = value_str[:METADATA_VALUE_MAX_LENGTH]
    return sanitized


def coerce_quantity(value: Any) -> int:
    """Positive integer quantity, floored and capped; 1 when unusable."""
    if isinstance(value, bool):
        return 1
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number) or number < 1:
        return 1
    return min(int(math.floor(number)), MAX_QUANTITY)


def _search_query_for_uid(uid: str) -> str:
    escaped = uid.replace("'", " ").replace('"', " ")
    return f"metadata['firebase_uid']:'{escaped}'"


def find_customer(uid: str | None, email: str | None) -> Any:
    """
    Find an existing Stripe customer.

    Searches by the ``firebase_uid`` metadata tag first, then lists by email.
    A failed search is logged and the email lookup still runs.
    """
    stripe_client = get_stripe()

    if uid:
        try:
            result = stripe_client.Customer.search(query=_search_query_for_uid(uid), limit=1)
            data = get_field(result, "data") or []
            if data:
                return data[0]
        except stripe.StripeError as e:
            logger.warning(f"Stripe customer search failed for uid {uid}: {e}")

    if email:
        result = stripe_client.Customer.list(email=email, limit=1)
        data = get_field(result, "data") or []
        if data:
            return data[0]

    return None


def get_or_create_customer(uid: str | None, email: str | None) -> Any:
    """Existing customer for uid/email, or a newly created one tagged with the uid."""
    customer = find_customer(uid, email)
    if customer is not None:
        return customer

    if not uid and not email:
        return None

    params: dict[str, Any] = {"metadata": {"firebase_uid": uid} if uid else {}}
    if email:
        params["email"] = email
    customer = get_stripe().Customer.create(**params)
    logger.info(f"Created Stripe customer {get_field(customer, 'id')} for uid {uid}")
    return customer


def _fill(metadata: dict[str, Any], key: str, value: Any) -> None:
    if value and not metadata.get(key):
        metadata[key] = value


def create_checkout_session_for_tier(
    tier: str | None = None,
    uid: str | None = None,
    email: str | None = None,
    price: str | None = None,
    quantity: Any = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """
    Create a Stripe Checkout Session for a tier or explicit price.

    Args:
        tier: Raw tier name (aliases accepted)
        uid: Firebase uid of the purchaser
        email: Purchaser email, used for customer lookup and prefill
        price: Explicit Stripe price id; takes precedence over ``tier``
        quantity: Requested quantity, clamped to [1, 999]
        metadata: Caller metadata; never overwritten by inferred values
        request_id: Optional caller request id used as the Stripe idempotency key

    Returns:
        {"id": session_id, "url": checkout_url}

    Raises:
        InvalidPriceError: Explicit price id could not be retrieved
        InvalidTierError: No price could be resolved
        UpstreamBillingError: Stripe rejected or failed the session creation
    """
    provided_metadata = dict(metadata or {})
    normalized_tier = canonicalize_tier(tier)
    normalized_uid = (uid or "").strip() or extract_uid(provided_metadata)

    requested_price_id = price.strip() if is_price_id(price) else None

    resolved_price_id = requested_price_id or resolve_tier_price(normalized_tier)

    fetched_price = None
    if requested_price_id:
        try:
            fetched_price = get_stripe().Price.retrieve(requested_price_id, expand=["product"])
        except stripe.StripeError as e:
            logger.warning(f"Unable to retrieve Stripe price {requested_price_id}: {e}")
            raise InvalidPriceError() from e
        resolved_price_id = get_field(fetched_price, "id") or resolved_price_id

    if not resolved_price_id:
        raise InvalidTierError()

    product = get_field(fetched_price, "product")
    product_metadata = get_metadata(product) if product is not None and not isinstance(product, str) else None
    product_id = price_product_id(fetched_price)

    if not normalized_tier:
        normalized_tier = identify_tier(
            metadata=provided_metadata,
            price_id=resolved_price_id,
            price_metadata=get_metadata(fetched_price) if fetched_price is not None else None,
            product_metadata=product_metadata,
        ) or canonicalize_tier(resolve_tier_from_price(resolved_price_id))

    merged = dict(provided_metadata)
    for key in ("tier", "planTier", "plan_tier"):
        _fill(merged, key, normalized_tier)
    for key in ("firebase_uid", "uid", "client_reference_id"):
        _fill(merged, key, normalized_uid)
    _fill(merged, "price_id", resolved_price_id)
    _fill(merged, "product_id", product_id)
    _fill(merged, "email", email)

    session_metadata = sanitize_metadata(merged)
    # The sanitised firebase_uid is the owner of the purchase, caller-supplied or not
    owner_uid = session_metadata.get("firebase_uid") or normalized_uid

    if fetched_price is not None:
        is_subscription = bool(get_field(fetched_price, "recurring"))
    else:
        is_subscription = normalized_tier != ONE_TIME_TIER
    mode = "subscription" if is_subscription else "payment"

    params: dict[str, Any] = {
        "mode": mode,
        "line_items": [{"price": resolved_price_id, "quantity": coerce_quantity(quantity)}],
        "success_url": f"{Config.STRIPE_SUCCESS_URL}?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": Config.STRIPE_CANCEL_URL,
        "allow_promotion_codes": True,
        "metadata": session_metadata,
    }
    if owner_uid:
        params["client_reference_id"] = owner_uid
    if is_subscription:
        params["subscription_data"] = {"metadata": session_metadata}
    else:
        params["payment_intent_data"] = {"metadata": session_metadata}

    try:
        customer = get_or_create_customer(owner_uid, email)
        customer_id = get_field(customer, "id")
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email
    except Exception as e:
        logger.warning(f"Customer resolution failed, falling back to customer_email: {e}")
        if email:
            params["customer_email"] = email

    create_kwargs: dict[str, Any] = {}
    if request_id:
        create_kwargs["idempotency_key"] = f"checkout:{request_id}"

    try:
        session = get_stripe().checkout.Session.create(**params, **create_kwargs)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        capture_payment_error(
            e,
            operation="checkout",
            user_id=owner_uid,
            details={"price_id": resolved_price_id, "tier": normalized_tier, "mode": mode},
        )
        raise from_stripe_error(e, "checkout_failed") from e

    session_id = get_field(session, "id")
    logger.info(
        f"Created checkout session {session_id} (mode: {mode}, tier: {normalized_tier}, "
        f"price: {resolved_price_id})",
        extra={"session_id": session_id, "user_id": owner_uid},
    )
    return {"id": session_id, "url": get_field(session, "url")}


def create_portal_session(uid: str | None = None, email: str | None = None) -> dict[str, Any]:
    """
    Create a Stripe Customer Portal session for an existing customer.

    Raises:
        MissingIdentityError: Neither uid nor email supplied
        CustomerNotFoundError: No existing Stripe customer matches
        UpstreamBillingError: Stripe failure
    """
    uid = (uid or "").strip() or None
    email = (email or "").strip() or None
    if not uid and not email:
        raise MissingIdentityError()

    try:
        customer = find_customer(uid, email)
    except stripe.StripeError as e:
        logger.error(f"Stripe error looking up portal customer: {e}")
        raise from_stripe_error(e, "portal_failed") from e

    customer_id = get_field(customer, "id")
    if not customer_id:
        raise CustomerNotFoundError()

    try:
        session = get_stripe().billing_portal.Session.create(
            customer=customer_id,
            return_url=Config.STRIPE_PORTAL_RETURN_URL,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal session: {e}")
        capture_payment_error(
            e, operation="portal", user_id=uid, details={"customer_id": customer_id}
        )
        raise from_stripe_error(e, "portal_failed") from e

    return {"id": get_field(session, "id"), "url": get_field(session, "url")}
