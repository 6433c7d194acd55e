import os
from functools import lru_cache

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _first_env_var(*names: str, default: str | None = None) -> str | None:
    """Return the first non-empty value among several environment variables."""
    for name in names:
        value = _get_env_var(name)
        if value:
            return value
    return default


# Tiers that may carry a configured Stripe price id.
PRICED_TIERS = ("basic", "medium", "intensive", "total", "weekly", "monthly")


@lru_cache(maxsize=1)
def get_tier_price_table() -> dict[str, str]:
    """
    Build the tier -> Stripe price id table from the environment.

    For each tier the first non-empty of PRICE_<TIER>, STRIPE_PRICE_<TIER> and
    VITE_STRIPE_PRICE_<TIER> wins. Values without the ``price_`` prefix are
    ignored. Read once per process; call ``_reset_tier_price_cache`` in tests.
    """
    table: dict[str, str] = {}
    for tier in PRICED_TIERS:
        suffix = tier.upper()
        value = _first_env_var(
            f"PRICE_{suffix}",
            f"STRIPE_PRICE_{suffix}",
            f"VITE_STRIPE_PRICE_{suffix}",
        )
        if value and value.startswith("price_"):
            table[tier] = value
    return table


def _reset_tier_price_cache() -> None:
    get_tier_price_table.cache_clear()


class Config:
    """Centralized configuration for the billing service"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_DEVELOPMENT = APP_ENV == "development"

    # Supabase (user records and webhook event log)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")
    USERS_TABLE = os.environ.get("LUCIA_USERS_TABLE", "users")
    WEBHOOK_EVENTS_TABLE = os.environ.get("LUCIA_WEBHOOK_EVENTS_TABLE", "stripe_webhook_events")

    # Stripe credentials. Either set directly or resolved through Secrets Manager.
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _first_env_var("STRIPE_WEBHOOK_SECRET", "WEBHOOK_SIGNING_SECRET")
    STRIPE_SECRET_ARN = _get_env_var("LUCIA_STRIPE_SECRET_ARN")
    AWS_REGION = _first_env_var(
        "AWS_REGION", "AWS_DEFAULT_REGION", "LUCIA_AWS_REGION", default="eu-west-1"
    )

    # Stripe client behaviour
    STRIPE_API_VERSION = _get_env_var("STRIPE_API_VERSION", "2024-06-20")
    STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", "30"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

    # Checkout redirect targets
    STRIPE_SUCCESS_URL = _get_env_var(
        "STRIPE_SUCCESS_URL", "https://www.luciadecode.com/success"
    )
    STRIPE_CANCEL_URL = _get_env_var("STRIPE_CANCEL_URL", "https://www.luciadecode.com/cancel")
    STRIPE_PORTAL_RETURN_URL = _get_env_var("STRIPE_PORTAL_RETURN_URL", STRIPE_SUCCESS_URL)

    # CORS
    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "ALLOWED_ORIGINS",
            "https://www.luciadecode.com,https://luciadecode.com,http://localhost:5173",
        ).split(",")
        if origin.strip()
    ]

    # Sentry
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = os.environ.get("SENTRY_ENABLED", "true").lower() in {
        "1",
        "true",
        "yes",
    }
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    SENTRY_RELEASE = os.environ.get("SENTRY_RELEASE", "1.0.0")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
            )

        return cls.SUPABASE_URL, cls.SUPABASE_KEY

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Check the variables the service cannot run without.

        Stripe credentials count as present when either the direct values or a
        Secrets Manager ARN is configured.

        Returns:
            Tuple of (all_present, missing_variable_names)
        """
        missing = [
            name
            for name, value in {
                "SUPABASE_URL": cls.SUPABASE_URL,
                "SUPABASE_KEY": cls.SUPABASE_KEY,
            }.items()
            if not value
        ]
        if not cls.STRIPE_SECRET_KEY and not cls.STRIPE_SECRET_ARN:
            missing.append("STRIPE_SECRET_KEY")
        if not cls.STRIPE_WEBHOOK_SECRET and not cls.STRIPE_SECRET_ARN:
            missing.append("STRIPE_WEBHOOK_SECRET")
        return (not missing, missing)
