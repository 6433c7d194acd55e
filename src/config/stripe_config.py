"""
Stripe client and secret resolution.

The Stripe secret key and webhook signing secret are read from the environment
or, when an ARN is configured, from AWS Secrets Manager. Both the secrets and
the SDK configuration are initialised at most once per process. A failed
attempt is not cached; the next caller simply tries again.
"""

import json
import logging
import threading
from dataclasses import dataclass

import boto3
import stripe
from botocore.exceptions import BotoCoreError, ClientError

from src.config.config import Config
from src.utils.exceptions import BillingConfigurationError

logger = logging.getLogger(__name__)

SECRET_KEY_FIELDS = ("STRIPE_SECRET_KEY", "secretKey", "key", "STRIPE_API_KEY")
WEBHOOK_SECRET_FIELDS = (
    "WEBHOOK_SIGNING_SECRET",
    "STRIPE_WEBHOOK_SECRET",
    "webhookSecret",
    "webhook",
    "whsec",
)


@dataclass(frozen=True)
class StripeSecrets:
    secret_key: str | None
    webhook_secret: str | None


_secrets: StripeSecrets | None = None
_stripe_configured = False
_lock = threading.Lock()


def _first_field(payload: dict, fields: tuple[str, ...]) -> str | None:
    for field in fields:
        value = payload.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_secret_payload(secret_string: str) -> StripeSecrets:
    """
    Interpret a Secrets Manager payload.

    JSON objects are searched for the known key names; any other payload is
    taken to be the bare Stripe secret key.
    """
    try:
        payload = json.loads(secret_string)
    except (TypeError, ValueError):
        payload = None

    if isinstance(payload, dict):
        return StripeSecrets(
            secret_key=_first_field(payload, SECRET_KEY_FIELDS),
            webhook_secret=_first_field(payload, WEBHOOK_SECRET_FIELDS),
        )

    value = (secret_string or "").strip()
    return StripeSecrets(secret_key=value or None, webhook_secret=None)


def _fetch_secret_from_aws(secret_arn: str) -> StripeSecrets:
    client = boto3.client("secretsmanager", region_name=Config.AWS_REGION)
    try:
        response = client.get_secret_value(SecretId=secret_arn)
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to read Stripe secrets from Secrets Manager: {e}")
        raise BillingConfigurationError(f"Unable to load Stripe secrets: {e}") from e

    secret_string = response.get("SecretString")
    if not secret_string:
        raise BillingConfigurationError("Stripe secret payload is empty")
    return parse_secret_payload(secret_string)


def load_stripe_secrets() -> StripeSecrets:
    """
    Resolve Stripe credentials once per process.

    Environment values take precedence. Missing values are filled from the
    Secrets Manager ARN in ``LUCIA_STRIPE_SECRET_ARN`` when it is set.

    Raises:
        BillingConfigurationError: If Secrets Manager cannot be read
    """
    global _secrets

    if _secrets is not None:
        return _secrets

    with _lock:
        if _secrets is not None:
            return _secrets

        secret_key = Config.STRIPE_SECRET_KEY
        webhook_secret = Config.STRIPE_WEBHOOK_SECRET

        if (not secret_key or not webhook_secret) and Config.STRIPE_SECRET_ARN:
            fetched = _fetch_secret_from_aws(Config.STRIPE_SECRET_ARN)
            secret_key = secret_key or fetched.secret_key
            webhook_secret = webhook_secret or fetched.webhook_secret
            logger.info("Stripe secrets loaded from Secrets Manager")

        _secrets = StripeSecrets(secret_key=secret_key, webhook_secret=webhook_secret)
        return _secrets


def get_webhook_secret() -> str | None:
    return load_stripe_secrets().webhook_secret


def get_stripe():
    """
    Return the ``stripe`` module configured with key, API version and timeout.

    Raises:
        BillingConfigurationError: If no secret key can be resolved
    """
    global _stripe_configured

    if _stripe_configured:
        return stripe

    secrets = load_stripe_secrets()
    if not secrets.secret_key:
        raise BillingConfigurationError("STRIPE_SECRET_KEY is not configured")

    with _lock:
        if not _stripe_configured:
            stripe.api_key = secrets.secret_key
            stripe.api_version = Config.STRIPE_API_VERSION
            stripe.max_network_retries = Config.STRIPE_MAX_NETWORK_RETRIES
            stripe.default_http_client = stripe.RequestsClient(
                timeout=Config.STRIPE_TIMEOUT_SECONDS
            )
            _stripe_configured = True
            logger.info(
                f"Stripe client configured (api_version: {Config.STRIPE_API_VERSION}, "
                f"timeout: {Config.STRIPE_TIMEOUT_SECONDS}s)"
            )

    return stripe


def reset_stripe_state() -> None:
    """Forget memoised secrets and SDK configuration."""
    global _secrets, _stripe_configured

    with _lock:
        _secrets = None
        _stripe_configured = False
