#!/usr/bin/env python3
"""
Webhook Event Log Database Module
Create-if-absent event records used to deduplicate Stripe webhook deliveries
"""

import logging
from datetime import UTC, datetime
from typing import Any

from postgrest import APIError

from src.config.config import Config
from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"

# Postgres unique_violation
UNIQUE_VIOLATION_CODE = "23505"

MAX_ERROR_LENGTH = 2000

_missing_table_warning_logged = False


def _table_name() -> str:
    return Config.WEBHOOK_EVENTS_TABLE


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the event table is missing from the
    Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if _table_name() in message or "PGRST205" in message:
        logger.warning(
            f"{_table_name()} table is unavailable in Supabase (migrations not applied or "
            "schema cache stale). Apply supabase/migrations/*_lucia_billing.sql and run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def is_duplicate_key_error(error: Exception) -> bool:
    """True when an insert failed because the event id already exists."""
    if isinstance(error, APIError) and str(error.code) == UNIQUE_VIOLATION_CODE:
        return True
    message = str(error).lower()
    return UNIQUE_VIOLATION_CODE in message or "duplicate key" in message


def _timestamp(epoch_seconds: int | None) -> str | None:
    if not epoch_seconds:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=UTC).isoformat()


def claim_event(event_id: str, event_type: str | None, created: int | None = None) -> bool:
    """
    Insert the pending record for a webhook event.

    The primary key on ``event_id`` makes the insert exclusive: of two
    concurrent deliveries exactly one succeeds.

    Args:
        event_id: Stripe event ID (evt_xxx)
        event_type: Stripe event type
        created: Stripe ``created`` timestamp (epoch seconds)

    Returns:
        True if this call created the record, False if it already existed

    Raises:
        Exception: Any storage error other than the duplicate-key violation
    """

    def _insert(client):
        return (
            client.table(_table_name())
            .insert(
                {
                    "event_id": event_id,
                    "event_type": event_type,
                    "event_created_at": _timestamp(created),
                    "status": STATUS_PENDING,
                    "inserted_at": datetime.now(UTC).isoformat(),
                }
            )
            .execute()
        )

    try:
        execute_with_retry(_insert, operation_name="claim_webhook_event")
    except Exception as e:
        if is_duplicate_key_error(e):
            return False
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording webhook event {event_id}: {e}", exc_info=True)
        raise

    return True


def _update_pending(event_id: str, fields: dict[str, Any], operation_name: str) -> None:
    def _update(client):
        return (
            client.table(_table_name())
            .update(fields)
            .eq("event_id", event_id)
            .eq("status", STATUS_PENDING)
            .execute()
        )

    execute_with_retry(_update, operation_name=operation_name)


def mark_event_processed(event_id: str) -> None:
    _update_pending(
        event_id,
        {"status": STATUS_PROCESSED, "processed_at": datetime.now(UTC).isoformat()},
        "mark_webhook_event_processed",
    )
    logger.info(f"Webhook event {event_id} marked processed")


def mark_event_failed(event_id: str, error: str) -> None:
    _update_pending(
        event_id,
        {
            "status": STATUS_FAILED,
            "error": (error or "")[:MAX_ERROR_LENGTH],
            "failed_at": datetime.now(UTC).isoformat(),
        },
        "mark_webhook_event_failed",
    )


def get_event_record(event_id: str) -> dict[str, Any] | None:
    """
    Get details of a recorded webhook event

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        Event record dictionary, or None if never seen
    """

    def _get(client):
        return (
            client.table(_table_name())
            .select("*")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_get, operation_name="get_webhook_event")
    return result.data[0] if result.data else None
