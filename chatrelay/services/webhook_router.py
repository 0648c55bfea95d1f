"""
Webhook Router

Fans internal events out to tenant-registered webhooks and performs the
signed HTTP delivery for each queued attempt.

Routing only enqueues jobs; the HTTP call happens later in the delivery
worker, so a slow or dead endpoint never holds up the code that emitted
the event.
"""
import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.database import AsyncSessionLocal
from chatrelay.logging_config import get_logger
from chatrelay.models.webhook import Webhook, WebhookDeliveryLog
from chatrelay.routes.metrics import track_webhook_attempt, track_webhook_enqueued
from chatrelay.schemas import WebhookConfig, WebhookEvent
from chatrelay.sentry_config import capture_exception
from chatrelay.services.job_queue import (
    WEBHOOK_DELIVERY_QUEUE,
    BackoffOptions,
    JobOptions,
    JobQueue,
)

logger = structlog.get_logger()

DELIVER_JOB = "deliver_webhook"


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt. ``duration`` is in milliseconds."""
    success: bool
    duration: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "duration": self.duration}
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.error is not None:
            result["error"] = self.error
        return result


def build_payload(event: WebhookEvent) -> dict[str, Any]:
    """Body sent to the endpoint."""
    return {
        "event": event.type,
        "timestamp": event.timestamp,
        "data": event.data,
    }


def serialize_payload(payload: dict[str, Any]) -> str:
    """Compact JSON; the signature is computed over exactly these bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def generate_signature(payload: Union[dict, str, bytes], secret: str) -> str:
    """
    HMAC-SHA256 signature in the ``sha256=<hex>`` format.

    ``payload`` is either the payload dict (serialized with
    ``serialize_payload``) or the raw body as received.
    """
    if isinstance(payload, dict):
        payload = serialize_payload(payload)
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    payload: Union[dict, str, bytes],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """Constant-time check of a ``sha256=<hex>`` signature."""
    if not signature or not secret:
        return False
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class WebhookRouter:
    """Routes events to webhooks and delivers queued attempts."""

    def __init__(
        self,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._queue = queue
        self._session_factory = session_factory or AsyncSessionLocal
        self._transport = transport

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def route_event(self, event: WebhookEvent) -> int:
        """
        Enqueue one delivery job per active webhook subscribed to the event.

        Never raises. Returns the number of jobs enqueued.
        """
        log = get_logger(tenant_id=event.tenant_id, event_type=event.type)

        try:
            webhooks = await self.get_webhooks_for_event(event.tenant_id, event.type)
        except Exception as e:
            log.error("webhook_lookup_failed", error=str(e))
            capture_exception()
            return 0

        if not webhooks:
            log.info("webhook_route_no_subscribers")
            return 0

        log.info("webhook_route_started", webhooks=len(webhooks))

        queued = 0
        for webhook in webhooks:
            if await self._queue_delivery(webhook, event):
                queued += 1
        return queued

    async def get_webhooks_for_event(self, tenant_id: str, event_type: str) -> list[WebhookConfig]:
        """
        Active webhooks of the tenant whose event list contains ``event_type``.

        Queried fresh on every call so subscription edits apply immediately.
        """
        async with self._session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.tenant_id == tenant_id,
                Webhook.is_active.is_(True),
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()

        matched = []
        for row in rows:
            try:
                config = WebhookConfig.model_validate(row)
            except ValidationError as e:
                logger.warning("webhook_config_invalid", webhook_id=row.id, error=str(e))
                continue
            if config.subscribes_to(event_type):
                matched.append(config)
        return matched

    async def _queue_delivery(self, webhook: WebhookConfig, event: WebhookEvent) -> bool:
        options = JobOptions(
            attempts=webhook.retry_count,
            backoff=BackoffOptions(type="exponential", delay=settings.WEBHOOK_BACKOFF_DELAY_MS),
            timeout=webhook.timeout_ms,
        )
        payload = {
            "webhookId": webhook.id,
            "webhook": webhook.model_dump(),
            "event": event.model_dump(),
        }

        try:
            await self._queue.add_job(WEBHOOK_DELIVERY_QUEUE, DELIVER_JOB, payload, options)
        except Exception as e:
            logger.error(
                "webhook_enqueue_failed",
                webhook_id=webhook.id,
                tenant_id=event.tenant_id,
                error=str(e),
            )
            capture_exception()
            return False

        track_webhook_enqueued(event.tenant_id, event.type)
        logger.info(
            "webhook_delivery_queued",
            webhook_id=webhook.id,
            webhook_name=webhook.name,
            event_type=event.type,
        )
        return True

    # ------------------------------------------------------------------
    # Delivery (called by the worker)
    # ------------------------------------------------------------------

    @staticmethod
    def build_headers(
        webhook: WebhookConfig,
        event: WebhookEvent,
        attempt_number: int,
        body: str,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.WEBHOOK_USER_AGENT,
            "X-Webhook-Event": event.type,
            "X-Webhook-Timestamp": event.timestamp,
            "X-Webhook-Attempt": str(attempt_number),
        }
        if webhook.secret:
            headers["X-Webhook-Signature"] = generate_signature(body, webhook.secret)
        return headers

    async def deliver_webhook(
        self,
        webhook_id: str,
        webhook: WebhookConfig,
        event: WebhookEvent,
        attempt_number: int = 1,
    ) -> DeliveryResult:
        """
        POST the event to the webhook once and log the attempt.

        Timeouts and connection errors come back as failed results, never as
        exceptions, so the attempt is always logged.
        """
        payload = build_payload(event)
        body = serialize_payload(payload)
        headers = self.build_headers(webhook, event, attempt_number, body)
        timeout_seconds = webhook.timeout_ms / 1000

        response_status = None
        response_body = None
        start = time.perf_counter()

        try:
            async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(webhook.url, content=body.encode("utf-8"), headers=headers),
                    timeout=timeout_seconds,
                )
            duration = _elapsed_ms(start)
            response_status = response.status_code
            response_body = response.text[:settings.WEBHOOK_RESPONSE_BODY_LIMIT]
            result = DeliveryResult(
                success=200 <= response.status_code < 300,
                duration=duration,
                status_code=response.status_code,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            result = DeliveryResult(
                success=False,
                duration=_elapsed_ms(start),
                error=f"Request timed out after {webhook.timeout_ms}ms",
            )
        except httpx.HTTPError as e:
            result = DeliveryResult(
                success=False,
                duration=_elapsed_ms(start),
                error=str(e) or e.__class__.__name__,
            )
        except Exception as e:
            result = DeliveryResult(
                success=False,
                duration=_elapsed_ms(start),
                error=f"Unexpected error: {e}",
            )

        track_webhook_attempt(event.tenant_id, result.success, result.duration)
        logger.info(
            "webhook_attempt_finished",
            webhook_id=webhook_id,
            tenant_id=event.tenant_id,
            event_type=event.type,
            attempt=attempt_number,
            success=result.success,
            status_code=result.status_code,
            error=result.error,
            duration_ms=result.duration,
        )

        await self._log_delivery(
            webhook_id=webhook_id,
            tenant_id=event.tenant_id,
            event_type=event.type,
            payload=payload,
            response_status=response_status,
            response_body=response_body,
            attempt_number=attempt_number,
            success=result.success,
            error_message=result.error,
            duration_ms=result.duration,
        )
        return result

    async def _log_delivery(self, **fields) -> None:
        """Append the attempt to ``webhook_logs``. Store errors are logged only."""
        try:
            async with self._session_factory() as db:
                db.add(WebhookDeliveryLog(**fields))
                await db.commit()
        except Exception as e:
            logger.error(
                "webhook_log_write_failed",
                webhook_id=fields.get("webhook_id"),
                attempt=fields.get("attempt_number"),
                error=str(e),
            )
            capture_exception()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_webhook_stats(
        self,
        tenant_id: str,
        webhook_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Aggregate the last 24 hours of delivery attempts."""
        since = datetime.now(timezone.utc) - timedelta(hours=settings.WEBHOOK_STATS_WINDOW_HOURS)

        try:
            async with self._session_factory() as db:
                stmt = select(WebhookDeliveryLog.success, WebhookDeliveryLog.duration_ms).where(
                    WebhookDeliveryLog.tenant_id == tenant_id,
                    WebhookDeliveryLog.created_at >= since,
                )
                if webhook_id:
                    stmt = stmt.where(WebhookDeliveryLog.webhook_id == webhook_id)
                rows = (await db.execute(stmt)).all()
        except Exception as e:
            logger.error("webhook_stats_failed", tenant_id=tenant_id, error=str(e))
            capture_exception()
            return None

        total = len(rows)
        successful = sum(1 for row in rows if row.success)
        avg_duration = round(sum(row.duration_ms or 0 for row in rows) / total) if total else 0

        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": f"{successful / total * 100:.2f}%" if total else "0%",
            "avg_duration": avg_duration,
        }

    async def get_webhook_logs(
        self,
        webhook_id: str,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDeliveryLog], int]:
        """Newest-first delivery attempts for one webhook, plus the total count."""
        async with self._session_factory() as db:
            filters = (
                WebhookDeliveryLog.tenant_id == tenant_id,
                WebhookDeliveryLog.webhook_id == webhook_id,
            )
            total = await db.scalar(select(func.count()).select_from(WebhookDeliveryLog).where(*filters))
            stmt = (
                select(WebhookDeliveryLog)
                .where(*filters)
                .order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.attempt_number.desc())
                .offset(offset)
                .limit(limit)
            )
            logs = list((await db.execute(stmt)).scalars().all())
        return logs, total or 0


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
