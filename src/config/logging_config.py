"""
Logging configuration.

Console logging is always on. Outside development every record is emitted as a
single JSON object so webhook processing can be followed per event id in the
log aggregator.
"""

import json
import logging
import sys

from src.config.config import Config

logger = logging.getLogger(__name__)

# Record attributes promoted into the JSON payload when passed via ``extra=``.
STRUCTURED_FIELDS = (
    "event_id",
    "event_type",
    "customer_id",
    "subscription_id",
    "user_id",
    "session_id",
)

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "stripe", "botocore", "hpack")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Formats log records as JSON with billing context and exception details.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure application logging.

    Sets up a stdout handler on the root logger: plain text in development,
    JSON everywhere else. Noisy client libraries are raised to WARNING.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if Config.IS_DEVELOPMENT:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Console logging configured (environment: {Config.APP_ENV})")
