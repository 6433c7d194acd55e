"""
Billing exceptions

Every expected failure in checkout, portal and webhook handling is raised as a
``BillingError`` subclass carrying a stable ``code`` and an HTTP status, so
routes and callers branch on ``code`` rather than message text.

Usage:
    from src.utils.exceptions import InvalidTierError

    raise InvalidTierError()

    # In a route:
    except BillingError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
"""

import logging
from typing import Any

import stripe

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing failures with a stable error code."""

    code = "billing_error"
    status_code = 500
    default_message = "Billing operation failed"
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
    ):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class BillingConfigurationError(BillingError):
    """A secret, price mapping or client setting is missing."""

    code = "configuration_error"
    status_code = 500
    default_message = "Billing is not configured"


class InvalidRequestError(BillingError):
    code = "invalid_request"
    status_code = 400
    default_message = "Invalid request"


class InvalidPriceError(BillingError):
    code = "invalid_price"
    status_code = 400
    default_message = "Invalid or unknown Stripe price id"


class InvalidTierError(BillingError):
    code = "invalid_tier"
    status_code = 400
    default_message = "Invalid or missing price for tier"


class MissingIdentityError(BillingError):
    code = "missing_identity"
    status_code = 400
    default_message = "A uid or email is required"


class CustomerNotFoundError(BillingError):
    code = "customer_not_found"
    status_code = 404
    default_message = "No Stripe customer found for this account"


class WebhookSignatureError(BillingError):
    """Webhook could not be authenticated. Never retried by this service."""

    code = "invalid_signature"
    status_code = 400
    default_message = "Webhook signature verification failed"


class UpstreamBillingError(BillingError):
    """Stripe was unreachable or rejected the call."""

    code = "stripe_error"
    status_code = 502
    default_message = "Payment provider request failed"
    retryable = True


def from_stripe_error(error: Exception, code: str) -> UpstreamBillingError:
    """
    Wrap a Stripe SDK exception, passing the provider's message through.

    Connection failures, rate limits and provider 5xx responses are marked
    retryable; any other provider rejection is not.
    """
    message = getattr(error, "user_message", None) or str(error) or type(error).__name__
    http_status = getattr(error, "http_status", None)

    retryable = isinstance(error, stripe.APIConnectionError | stripe.RateLimitError) or (
        isinstance(http_status, int) and http_status >= 500
    )
    return UpstreamBillingError(message, code=code, retryable=retryable)
