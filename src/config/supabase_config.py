import logging
import threading
import time

import httpx
from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_client_lock = threading.Lock()


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.

    A failed initialisation is not remembered: the error propagates and the
    next call attempts a fresh initialisation.

    Raises:
        RuntimeError: If configuration is missing or the client cannot be built
    """
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    with _client_lock:
        # Double-check after acquiring lock
        if _supabase_client is not None:
            return _supabase_client

        try:
            Config.validate()

            if not Config.SUPABASE_URL.startswith(("http://", "https://")):
                raise RuntimeError(
                    f"SUPABASE_URL must start with 'http://' or 'https://'. "
                    f"Current value: '{Config.SUPABASE_URL}'. "
                    f"Expected: 'https://{Config.SUPABASE_URL}'"
                )

            postgrest_base_url = f"{Config.SUPABASE_URL}/rest/v1"

            # base_url and auth headers must be set so postgrest relative paths resolve
            httpx_client = httpx.Client(
                base_url=postgrest_base_url,
                headers={
                    "apikey": Config.SUPABASE_KEY,
                    "Authorization": f"Bearer {Config.SUPABASE_KEY}",
                },
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(
                    max_connections=30,
                    max_keepalive_connections=10,
                    keepalive_expiry=60.0,
                ),
                http2=True,
            )

            client = create_client(
                supabase_url=Config.SUPABASE_URL,
                supabase_key=Config.SUPABASE_KEY,
                options=ClientOptions(
                    postgrest_client_timeout=30,
                    schema="public",
                    headers={"X-Client-Info": "lucia-billing/1.0"},
                ),
            )

            if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
                client.postgrest.session = httpx_client

            _supabase_client = client
            logger.info("Supabase client initialized (base_url: %s)", postgrest_base_url)
            return _supabase_client

        except Exception as e:
            logger.error(
                f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
                exc_info=True,
            )
            raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Returns:
        bool: True if a cached client was discarded
    """
    global _supabase_client

    with _client_lock:
        if _supabase_client is None:
            return False

        try:
            session = getattr(getattr(_supabase_client, "postgrest", None), "session", None)
            if session is not None and hasattr(session, "close"):
                session.close()
        except Exception as close_error:
            logger.debug(f"Error closing httpx client during reset: {close_error}")

        _supabase_client = None
        logger.info("Supabase client reset - next request will create fresh connection")
        return True


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    These typically come from server-side connection resets or stale keepalive
    connections in the pooled httpx client.
    """
    error_str = str(error).lower()
    error_type = type(error).__name__

    if "protocolerror" in error_type.lower():
        return True

    http2_error_indicators = [
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "in state connectionstate",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    ]
    if any(indicator in error_str for indicator in http2_error_indicators):
        return True

    if "connection closed" in error_str and ("http2" in error_str or "h2" in error_str):
        return True

    return False


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that performs the database operation.
                   It receives the Supabase client as its only argument.
        max_retries: Maximum number of retry attempts (default: 2)
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Example:
        def insert_event(client):
            return client.table("stripe_webhook_events").insert(row).execute()

        result = execute_with_retry(insert_event, operation_name="claim_event")
    """
    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            if not is_http2_protocol_error(e):
                raise

            if attempt >= max_retries:
                logger.error(
                    f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                )
                raise

            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(0.1)

    raise RuntimeError(f"{operation_name} failed with no error captured")
