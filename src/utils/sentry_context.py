"""
Sentry error context utilities.

Helpers that attach billing context (event id, customer, operation) to errors
captured by Sentry. Sentry failures are logged and never replace the original
exception.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None if Sentry is disabled or failed
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'checkout', 'portal', 'webhook')
        provider: Payment provider (default: 'stripe')
        user_id: Firebase uid if known
        details: Additional details (event id, customer id, price id, ...)

    Returns:
        Event ID if captured, None otherwise
    """
    context_data: dict[str, Any] = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if details:
        context_data.update({k: v for k, v in details.items() if v is not None})

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )
