"""
ARQ background workers for ChatRelay.

Two workers share this module:

    arq chatrelay.worker.WorkerSettings          # webhook-delivery queue
    arq chatrelay.worker.MessageWorkerSettings   # message-status queue

Per-job attempts and backoff travel in the job options (see
``chatrelay.services.job_queue``); ARQ's own ``max_tries`` is only a ceiling.
"""
import asyncio
from datetime import timedelta
from typing import Optional

import structlog
from arq import Retry, func
from arq.connections import RedisSettings

from chatrelay.config import settings
from chatrelay.logging_config import configure_logging
from chatrelay.schemas import MAX_WEBHOOK_TIMEOUT_MS, WebhookConfig, WebhookEvent
from chatrelay.sentry_config import capture_message, configure_sentry
from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.job_queue import (
    MAX_JOB_TRIES,
    MESSAGE_STATUS_QUEUE,
    WEBHOOK_DELIVERY_QUEUE,
    ArqJobQueue,
    JobOptions,
)
from chatrelay.services.message_sender import HttpMessagingProvider, MessageSender
from chatrelay.services.rate_limiter import RateLimiter
from chatrelay.services.webhook_router import WebhookRouter

logger = structlog.get_logger()

# One attempt is bounded by the webhook timeout; the rest covers the log write
DELIVERY_JOB_TIMEOUT_SECONDS = MAX_WEBHOOK_TIMEOUT_MS // 1000 + 30


async def startup(ctx: dict) -> None:
    """Build the delivery services once per worker process."""
    configure_logging()
    configure_sentry()

    queue = ArqJobQueue(pool=ctx["redis"])
    router = WebhookRouter(queue)
    tracker = DeliveryStatusTracker(router, queue)

    ctx["queue"] = queue
    ctx["router"] = router
    ctx["tracker"] = tracker
    # Resends are not throttled, the limiter only guards the API send path
    ctx["sender"] = MessageSender(RateLimiter(), HttpMessagingProvider(), tracker)

    logger.info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict) -> None:
    logger.info("worker_stopped")


async def deliver_webhook(ctx: dict, payload: dict, options: Optional[dict] = None) -> dict:
    """
    Deliver one event to one webhook.

    ``ctx["job_try"]`` is the 1-based attempt number. Failed attempts are
    retried with the job's backoff until ``attempts`` is reached; the last
    failure is returned, not raised, which leaves the event permanently
    undelivered for that webhook.
    """
    job_try = ctx.get("job_try", 1)
    job_options = JobOptions.from_dict(options)
    attempts = min(job_options.attempts, MAX_JOB_TRIES)

    webhook_id = payload["webhookId"]
    webhook = WebhookConfig.model_validate(payload["webhook"])
    event = WebhookEvent.model_validate(payload["event"])

    router: WebhookRouter = ctx["router"]
    with structlog.contextvars.bound_contextvars(
        webhook_id=webhook_id, tenant_id=event.tenant_id, job_try=job_try
    ):
        result = await router.deliver_webhook(webhook_id, webhook, event, attempt_number=job_try)

    if result.success:
        return result.to_dict()

    if job_try < attempts:
        defer_ms = job_options.backoff.delay_for(job_try)
        logger.info(
            "webhook_retry_scheduled",
            webhook_id=webhook_id,
            tenant_id=event.tenant_id,
            attempt=job_try,
            max_attempts=attempts,
            defer_ms=defer_ms,
        )
        raise Retry(defer=timedelta(milliseconds=defer_ms))

    logger.warning(
        "webhook_delivery_exhausted",
        webhook_id=webhook_id,
        tenant_id=event.tenant_id,
        event_type=event.type,
        attempts=job_try,
        error=result.error,
        status_code=result.status_code,
    )
    capture_message(f"Webhook {webhook_id} permanently undelivered", level="warning")
    return result.to_dict()


async def update_message_status(ctx: dict, payload: dict, options: Optional[dict] = None) -> dict:
    """Apply a queued status update (e.g. from a provider callback)."""
    tracker: DeliveryStatusTracker = ctx["tracker"]
    with structlog.contextvars.bound_contextvars(message_id=payload["messageId"]):
        updated = await tracker.update_status(
            payload["messageId"],
            payload["status"],
            payload.get("error"),
        )
    return {"message_id": payload["messageId"], "updated": updated}


async def resend_message(ctx: dict, payload: dict, options: Optional[dict] = None) -> dict:
    """Resend a failed message once its backoff elapsed."""
    sender: MessageSender = ctx["sender"]
    with structlog.contextvars.bound_contextvars(message_id=payload["messageId"]):
        success = await sender.resend(payload["messageId"])
    return {"message_id": payload["messageId"], "retry_count": payload.get("retryCount"), "success": success}


class WorkerSettings:
    """Webhook delivery worker - use with 'arq chatrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = WEBHOOK_DELIVERY_QUEUE
    functions = [func(deliver_webhook, max_tries=MAX_JOB_TRIES)]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = DELIVERY_JOB_TIMEOUT_SECONDS


class MessageWorkerSettings:
    """Message status worker - use with 'arq chatrelay.worker.MessageWorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = MESSAGE_STATUS_QUEUE
    functions = [
        func(update_message_status, max_tries=3),
        func(resend_message, max_tries=1),
    ]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 120


async def main():
    """Print how to run the workers."""
    logger.info(
        "worker_usage",
        webhook_worker="arq chatrelay.worker.WorkerSettings",
        message_worker="arq chatrelay.worker.MessageWorkerSettings",
        redis=settings.REDIS_URL,
    )


if __name__ == "__main__":
    asyncio.run(main())
