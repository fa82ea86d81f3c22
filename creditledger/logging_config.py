"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields. Download tokens
and signatures never reach the log stream; they are replaced by a short
fingerprint before rendering.
"""
import hashlib
import logging
import sys

import structlog


# Event keys whose values are bearer secrets
SECRET_LOG_KEYS = frozenset({"download_token", "token", "signature", "authorization"})


def redact_secrets(logger, method_name, event_dict):
    """Replace bearer secrets with a stable, non-reversible fingerprint."""
    for key in SECRET_LOG_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value:
            digest = hashlib.sha256(str(value).encode()).hexdigest()[:8]
            event_dict[key] = f"<redacted:{digest}>"
    return event_dict


def configure_logging(level: int = logging.INFO):
    """Configure structlog for JSON output with context."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(user_id=user_id, payment_reference=payment_reference)
        log.info("payment_fulfilled", credits=1200)
    """
    return logger.bind(**context)


def bind_request_context(**context):
    """Bind context (request_id, user_id) for every log line of the current request."""
    structlog.contextvars.bind_contextvars(**context)


def clear_request_context():
    structlog.contextvars.clear_contextvars()
