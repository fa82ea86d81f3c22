"""
Sentry configuration for error tracking.

Captures unhandled exceptions plus the failures the ledger deliberately
absorbs (degraded receipts, failed email dispatch) so they are not lost.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from creditledger.config import settings
from creditledger.logging_config import SECRET_LOG_KEYS, get_logger


logger = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=scrub_event,
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
        send_default_pii=False,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def scrub_event(event, hint):
    """
    Drop download tokens from request data before an event leaves the process.

    Tokens travel in the query string of the public download endpoint.
    """
    request = event.get("request") or {}
    query_string = request.get("query_string")
    if isinstance(query_string, str) and "token=" in query_string:
        request["query_string"] = "[Filtered]"

    extra = event.get("extra") or {}
    for key in SECRET_LOG_KEYS.intersection(extra):
        extra[key] = "[Filtered]"
    return event


def capture_exception(exc_info=None, **tags):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception as e:
            capture_exception(e, payment_reference=payment_reference)

    Never raises, so callers can use it inside their own error handling.
    """
    try:
        if not sentry_sdk.get_client().is_active():
            return
        with sentry_sdk.new_scope() as scope:
            for key, value in tags.items():
                scope.set_tag(key, value)
            sentry_sdk.capture_exception(exc_info)
    except Exception as e:
        logger.warning("sentry_capture_failed", error=str(e))
