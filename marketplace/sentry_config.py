"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the API and the delivery worker.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from marketplace.config import settings
from marketplace.logging_config import get_logger


log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with the FastAPI integration.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", dsn_prefix=dsn[:20])


def add_context(event, hint):
    """
    Tag error events with the installation they concern, when known.

    Workers set the installation id as a Sentry tag before running a job;
    the FastAPI integration already adds request context.
    """
    event.setdefault("tags", {}).setdefault("service", settings.APP_NAME)
    return event


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception()
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    """
    Capture a message to Sentry.

    Usage:
        capture_message("Webhook dead-lettered", level="warning")
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
