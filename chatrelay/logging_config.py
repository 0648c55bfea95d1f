"""
Structured logging for the API and the delivery workers.

Events are snake_case names (``webhook_delivery_queued``,
``message_status_updated``...) with tenant, webhook and message ids as fields.
``LOG_FORMAT=console`` switches to a human-readable renderer for local runs.
"""
import logging
import sys

import structlog

from chatrelay.config import settings

# Per-request chatter from libraries the pipeline calls in a loop
_NOISY_LOGGERS = ("httpx", "httpcore", "arq.jobs")


def configure_logging():
    """Configure structlog and the stdlib root logger; returns a logger."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if settings.LOG_FORMAT == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger().bind(service=settings.APP_NAME.lower())


logger = configure_logging()


def get_logger(**context):
    """Logger with ids bound, e.g. ``get_logger(tenant_id=..., event_type=...)``."""
    return structlog.get_logger().bind(**context)
