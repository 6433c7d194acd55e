"""
User record access for billing reconciliation.

One row per Firebase uid in the ``users`` table. Billing state lives in the
``stripe`` and ``billing`` JSON columns next to the top-level ``tier`` and
usage counters. Storage errors propagate so webhook processing can mark the
event failed and let Stripe redeliver.
"""

import logging
from typing import Any

from src.config.config import Config
from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

# JSON paths that may hold the Stripe customer id, newest layout first.
CUSTOMER_ID_COLUMNS = ("stripe->>customerId", "billing->>stripeCustomerId")


def _table_name() -> str:
    return Config.USERS_TABLE


def get_user(uid: str) -> dict[str, Any] | None:
    """
    Get a user record by Firebase uid

    Returns:
        User dictionary if found, None otherwise
    """

    def _get(client):
        return client.table(_table_name()).select("*").eq("id", uid).limit(1).execute()

    result = execute_with_retry(_get, operation_name="get_user")
    return result.data[0] if result.data else None


def find_user_by_stripe_customer(customer_id: str | None) -> dict[str, Any] | None:
    """
    Reverse lookup of a user by Stripe customer id.

    Returns:
        ``{"uid": ..., "data": row}`` for the first match, or None
    """
    if not customer_id:
        return None

    for column in CUSTOMER_ID_COLUMNS:

        def _find(client, column=column):
            return (
                client.table(_table_name())
                .select("*")
                .eq(column, customer_id)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_find, operation_name="find_user_by_stripe_customer")
        if result.data:
            row = result.data[0]
            return {"uid": row.get("id"), "data": row}

    logger.debug(f"No user found for Stripe customer {customer_id}")
    return None


def upsert_user_fields(uid: str, fields: dict[str, Any]) -> None:
    """
    Merge ``fields`` into the user's row in a single statement.

    Columns not present in ``fields`` are left untouched; the row is created
    when the uid has no record yet.
    """
    row = {"id": uid, **fields}

    def _upsert(client):
        return client.table(_table_name()).upsert(row, on_conflict="id").execute()

    execute_with_retry(_upsert, operation_name="upsert_user_billing")
