"""
Sentry configuration for error tracking.

Captures unhandled exceptions in the API and the delivery workers, plus the
soft failures the delivery pipeline logs and swallows.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from chatrelay.config import settings

logger = structlog.get_logger()


def configure_sentry():
    """
    Initialize Sentry with FastAPI, SQLAlchemy and arq integrations.

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
            ArqIntegration(),
        ],
        before_send=add_context,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", dsn_prefix=dsn[:20])


def add_context(event, hint):
    """
    Copy the ids bound in the structlog context onto the Sentry event as tags.

    Requests bind ``request_id`` and ``tenant_id``; worker jobs bind the
    webhook or message they are working on.
    """
    context = structlog.contextvars.get_contextvars()
    tags = event.setdefault("tags", {})
    for key in ("request_id", "tenant_id", "webhook_id", "message_id"):
        if context.get(key):
            tags[key] = context[key]
    return event


def capture_exception(exc_info=None):
    """Report a handled exception. No-op while Sentry is disabled."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    # Used for outcomes that are not exceptions, e.g. a webhook that ran out of attempts
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
