"""
Field extraction for Stripe objects.

Webhook payloads arrive as ``stripe.StripeObject`` instances while tests and
expanded API responses may be plain dicts. Each helper accepts either and
returns an explicit Optional instead of raising on missing data.
"""

from typing import Any

# Metadata keys that may carry the Firebase uid, in priority order.
UID_METADATA_KEYS = ("firebase_uid", "uid", "user_id", "userId", "client_reference_id")


def get_field(obj: Any, field: str) -> Any:
    """Safely read ``field`` from a Stripe object, dict or attribute bag."""
    if obj is None:
        return None

    # Mapping access first: "items" on a dict-like object is also a method name.
    if isinstance(obj, dict):
        return obj.get(field)

    try:
        return obj[field]
    except (KeyError, TypeError, IndexError, AttributeError):
        pass

    return getattr(obj, field, None)


def get_path(obj: Any, *fields: str) -> Any:
    """Follow a chain of fields, stopping at the first missing one."""
    current = obj
    for field in fields:
        current = get_field(current, field)
        if current is None:
            return None
    return current


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def get_metadata(obj: Any) -> dict[str, Any]:
    return metadata_to_dict(get_field(obj, "metadata"))


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_uid(metadata: dict[str, Any] | None) -> str | None:
    """First non-empty uid candidate from metadata."""
    if not metadata:
        return None
    for key in UID_METADATA_KEYS:
        value = _clean_str(metadata.get(key))
        if value:
            return value
    return None


def get_id(value: Any) -> str | None:
    """Id of an expandable field: either the id string or the expanded object."""
    if isinstance(value, str):
        return value or None
    return _clean_str(get_field(value, "id"))


def _list_data(obj: Any, field: str) -> list:
    data = get_path(obj, field, "data")
    if isinstance(data, list):
        return data
    return list(data) if data else []


def first_line_price(container: Any, field: str = "line_items") -> Any:
    """Price of the first line item on a checkout session (or invoice ``lines``)."""
    items = _list_data(container, field)
    if not items:
        return None
    return get_field(items[0], "price")


def first_subscription_item(subscription: Any) -> Any:
    items = _list_data(subscription, "items")
    return items[0] if items else None


def first_subscription_price(subscription: Any) -> Any:
    return get_field(first_subscription_item(subscription), "price")


def price_product_id(price: Any) -> str | None:
    return get_id(get_field(price, "product"))


def price_product_metadata(price: Any) -> dict[str, Any] | None:
    """Product metadata when the product is expanded, otherwise None."""
    product = get_field(price, "product")
    if product is None or isinstance(product, str):
        return None
    return get_metadata(product)


def _as_epoch(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and value > 0:
        return int(value)
    return None


def current_period_end(subscription: Any) -> int | None:
    """
    Period end of a subscription in epoch seconds.

    Newer API versions only carry it on the subscription items.
    """
    value = _as_epoch(get_field(subscription, "current_period_end"))
    if value is not None:
        return value
    return _as_epoch(get_field(first_subscription_item(subscription), "current_period_end"))


def invoice_subscription_id(invoice: Any) -> str | None:
    subscription = get_id(get_field(invoice, "subscription"))
    if subscription:
        return subscription
    return get_id(get_path(invoice, "parent", "subscription_details", "subscription"))


def invoice_period_end(invoice: Any) -> int | None:
    return _as_epoch(get_field(invoice, "period_end"))


def event_created(event: Any) -> int | None:
    return _as_epoch(get_field(event, "created"))

