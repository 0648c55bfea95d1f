"""
Delivery Status Tracker

Owns the message status state machine:

    pending -> sent -> delivered -> read
    any non-failed status -> failed
    failed -> failed            (error update / finalization)
    failed -> pending | sent    (resend, while retries remain)

Every accepted transition is recorded in ``message_status_events`` and
announced to webhooks as ``message.<status>``. Failures schedule a resend
with exponential backoff until ``MESSAGE_MAX_RETRIES`` is reached.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from chatrelay.config import settings
from chatrelay.database import AsyncSessionLocal
from chatrelay.models.message import Message, MessageStatus, MessageStatusEvent
from chatrelay.routes.metrics import (
    track_permanent_failure,
    track_retry_scheduled,
    track_status_transition,
)
from chatrelay.schemas import WebhookEvent
from chatrelay.sentry_config import capture_exception
from chatrelay.services.job_queue import MESSAGE_STATUS_QUEUE, BackoffOptions, JobOptions, JobQueue
from chatrelay.services.webhook_router import WebhookRouter

logger = structlog.get_logger()

MAX_RETRIES_ERROR = "Max retries reached"

UPDATE_STATUS_JOB = "update_message_status"
RESEND_JOB = "resend_message"

TIME_RANGES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

# Provider callback vocabulary -> canonical status
PROVIDER_STATUS_MAP = {
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "SERVER_ACK": MessageStatus.DELIVERED,
    "DELIVERED": MessageStatus.DELIVERED,
    "READ": MessageStatus.READ,
    "VIEWED": MessageStatus.READ,
    "PLAYED": MessageStatus.READ,
    "SENT": MessageStatus.SENT,
    "ACCEPTED": MessageStatus.SENT,
    "FAILED": MessageStatus.FAILED,
    "ERROR": MessageStatus.FAILED,
}

_FORWARD_ORDER = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def retry_delay_ms(retry_count: int) -> int:
    """Backoff before resend number ``retry_count + 1``: 1000, 2000, 4000 ms..."""
    return 2 ** retry_count * 1000


def normalize_provider_status(raw: Optional[str]) -> Optional[MessageStatus]:
    """Map a provider status string to a MessageStatus, or None if unknown."""
    if not raw:
        return None
    mapped = PROVIDER_STATUS_MAP.get(raw.strip().upper())
    if mapped is not None:
        return mapped
    try:
        return MessageStatus(raw.strip().lower())
    except ValueError:
        return None


def indicates_retries_exhausted(error: Optional[str]) -> bool:
    return bool(error) and "max retries" in error.lower()


def can_transition(current: MessageStatus, new: MessageStatus, meta: Optional[dict] = None) -> bool:
    """Whether ``current -> new`` is allowed. Late provider callbacks never move a message backwards."""
    if new == MessageStatus.FAILED:
        return True
    if current == MessageStatus.FAILED:
        if new not in (MessageStatus.PENDING, MessageStatus.SENT):
            return False
        return not (meta or {}).get("retriesExhausted", False)
    return _FORWARD_ORDER[new] > _FORWARD_ORDER[current]


def _percent(part: int, total: int) -> str:
    if total == 0:
        return "0%"
    return f"{part / total * 100:.2f}%"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DeliveryStatusTracker:
    """Applies status updates and schedules resends of failed messages."""

    def __init__(
        self,
        router: WebhookRouter,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession] = None,
    ):
        self._router = router
        self._queue = queue
        self._session_factory = session_factory or AsyncSessionLocal

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus | str,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move a message to ``status``.

        Returns True when the transition was applied. Never raises: unknown
        messages, rejected transitions and store errors are logged and
        reported as False.
        """
        log = logger.bind(message_id=message_id)

        try:
            status = MessageStatus(status)
        except ValueError:
            log.warning("status_update_invalid_status", status=status)
            return False

        try:
            async with self._session_factory() as db:
                stmt = (
                    select(Message)
                    .options(selectinload(Message.conversation))
                    .where(Message.id == message_id)
                )
                message = await db.scalar(stmt)

                if message is None:
                    log.warning("status_update_message_not_found", status=status.value)
                    return False

                previous = message.status
                if not can_transition(previous, status, message.meta):
                    log.info(
                        "status_transition_ignored",
                        current=previous.value,
                        requested=status.value,
                    )
                    return False

                meta = dict(message.meta or {})
                if error:
                    meta["error"] = error
                if status == MessageStatus.FAILED and indicates_retries_exhausted(error):
                    meta["retriesExhausted"] = True

                message.status = status
                message.meta = meta
                db.add(MessageStatusEvent(
                    message_id=message.id,
                    tenant_id=message.tenant_id,
                    status=status,
                    error=error,
                ))
                await db.commit()

                tenant_id = message.tenant_id
                session_id = message.conversation.session_id if message.conversation else None
        except Exception as e:
            log.error("status_update_failed", status=status.value, error=str(e))
            capture_exception()
            return False

        track_status_transition(status.value)
        log.info(
            "message_status_updated",
            tenant_id=tenant_id,
            previous=previous.value,
            status=status.value,
            error=error,
        )

        await self._router.route_event(WebhookEvent(
            type=f"message.{status.value}",
            tenant_id=tenant_id,
            session_id=session_id,
            data={"messageId": message_id, "status": status.value, "error": error},
        ))

        if status == MessageStatus.FAILED and not indicates_retries_exhausted(error):
            await self.schedule_retry(message_id)

        return True

    async def schedule_retry(self, message_id: str) -> Optional[int]:
        """
        Schedule a resend of a failed message.

        The incremented ``retryCount`` is committed before the resend job is
        queued, so the job never runs against the old count. If queueing
        fails the count is put back.

        Returns the delay in ms, or None when nothing was scheduled (message
        missing, retries exhausted, store or queue error).
        """
        log = logger.bind(message_id=message_id)

        try:
            async with self._session_factory() as db:
                message = await db.get(Message, message_id)
                if message is None:
                    log.warning("retry_message_not_found")
                    return None

                tenant_id = message.tenant_id
                retry_count = message.retry_count
                exhausted = retry_count >= settings.MESSAGE_MAX_RETRIES

                if not exhausted:
                    message.meta = {**(message.meta or {}), "retryCount": retry_count + 1}
                    await db.commit()
        except Exception as e:
            log.error("retry_schedule_failed", error=str(e))
            capture_exception()
            return None

        if exhausted:
            log.warning("message_retries_exhausted", tenant_id=tenant_id, retry_count=retry_count)
            track_permanent_failure(tenant_id)
            await self.update_status(message_id, MessageStatus.FAILED, MAX_RETRIES_ERROR)
            return None

        delay = retry_delay_ms(retry_count)
        try:
            await self._queue.add_job(
                MESSAGE_STATUS_QUEUE,
                RESEND_JOB,
                {"messageId": message_id, "retryCount": retry_count + 1},
                JobOptions(delay=delay),
            )
        except Exception as e:
            log.error("retry_enqueue_failed", error=str(e), retry_count=retry_count + 1)
            capture_exception()
            await self._restore_retry_count(message_id, retry_count)
            return None

        track_retry_scheduled(tenant_id)
        log.info("message_retry_scheduled", tenant_id=tenant_id, retry_count=retry_count + 1, delay_ms=delay)
        return delay

    async def _restore_retry_count(self, message_id: str, retry_count: int) -> None:
        try:
            async with self._session_factory() as db:
                message = await db.get(Message, message_id)
                if message is not None:
                    message.meta = {**(message.meta or {}), "retryCount": retry_count}
                    await db.commit()
        except Exception as e:
            logger.error("retry_count_restore_failed", message_id=message_id, error=str(e))
            capture_exception()

    async def enqueue_status_update(
        self,
        message_id: str,
        status: MessageStatus | str,
        error: Optional[str] = None,
    ) -> Optional[str]:
        """Queue an ``update_status`` call for the message-status worker."""
        status = MessageStatus(status)
        return await self._queue.add_job(
            MESSAGE_STATUS_QUEUE,
            UPDATE_STATUS_JOB,
            {"messageId": message_id, "status": status.value, "error": error},
            JobOptions(attempts=3, backoff=BackoffOptions(type="exponential", delay=1000)),
        )

    async def batch_update_status(self, updates: Iterable[dict]) -> dict:
        """
        Apply ``update_status`` to each ``{message_id, status, error?}`` in order.

        Each entry fails softly on its own.
        """
        total = updated = 0
        for update in updates:
            total += 1
            applied = await self.update_status(
                update["message_id"],
                update["status"],
                update.get("error"),
            )
            if applied:
                updated += 1

        logger.info("status_batch_applied", total=total, updated=updated)
        return {"total": total, "updated": updated, "skipped": total - updated}

    async def get_delivery_stats(self, tenant_id: str, time_range: str = "day") -> dict:
        """Status counts and delivery/read/failure rates of outgoing messages."""
        if time_range not in TIME_RANGES:
            raise ValueError(f"Unknown time range: {time_range}")

        since = datetime.now(timezone.utc) - TIME_RANGES[time_range]

        async with self._session_factory() as db:
            stmt = (
                select(Message.status, func.count(Message.id))
                .where(
                    Message.tenant_id == tenant_id,
                    Message.is_from_me.is_(True),
                    Message.created_at >= since,
                )
                .group_by(Message.status)
            )
            rows = (await db.execute(stmt)).all()

        by_status = {s.value: 0 for s in MessageStatus}
        for status, count in rows:
            by_status[MessageStatus(status).value] = count

        total = sum(by_status.values())
        delivered = by_status["delivered"] + by_status["read"]

        return {
            "time_range": time_range,
            "total": total,
            "by_status": by_status,
            "rates": {
                "delivery": _percent(delivered, total),
                "read": _percent(by_status["read"], total),
                "failure": _percent(by_status["failed"], total),
            },
        }

    async def get_failed_messages(self, tenant_id: str, limit: int = 50) -> list[dict]:
        """Most recent failed messages with their conversation, for triage."""
        async with self._session_factory() as db:
            stmt = (
                select(Message)
                .options(selectinload(Message.conversation))
                .where(
                    Message.tenant_id == tenant_id,
                    Message.status == MessageStatus.FAILED,
                )
                .order_by(Message.updated_at.desc())
                .limit(limit)
            )
            messages = (await db.execute(stmt)).scalars().all()

        failed = []
        for message in messages:
            conversation = message.conversation
            failed.append({
                "id": message.id,
                "content": message.content,
                "error": (message.meta or {}).get("error"),
                "retry_count": message.retry_count,
                "retries_exhausted": bool((message.meta or {}).get("retriesExhausted")),
                "updated_at": _isoformat(message.updated_at),
                "conversation": {
                    "id": conversation.id,
                    "contact_name": conversation.contact_name,
                    "contact_phone": conversation.contact_phone,
                    "session_id": conversation.session_id,
                } if conversation else None,
            })
        return failed

    async def get_delivery_timeline(self, message_id: str, tenant_id: Optional[str] = None) -> Optional[dict]:
        """
        Status history of a message.

        Uses the recorded transitions; messages without recorded history fall
        back to ``created_at`` (pending) and ``updated_at`` (current status).
        """
        async with self._session_factory() as db:
            stmt = select(Message).where(Message.id == message_id)
            if tenant_id is not None:
                stmt = stmt.where(Message.tenant_id == tenant_id)
            message = await db.scalar(stmt)
            if message is None:
                return None

            events_stmt = (
                select(MessageStatusEvent)
                .where(MessageStatusEvent.message_id == message_id)
                .order_by(MessageStatusEvent.created_at)
            )
            events = (await db.execute(events_stmt)).scalars().all()

        timeline = [{"status": MessageStatus.PENDING.value, "timestamp": _isoformat(message.created_at)}]

        if events:
            for event in events:
                entry = {"status": event.status.value, "timestamp": _isoformat(event.created_at)}
                if event.error:
                    entry["error"] = event.error
                timeline.append(entry)
        elif message.status != MessageStatus.PENDING:
            entry = {"status": message.status.value, "timestamp": _isoformat(message.updated_at)}
            if (message.meta or {}).get("error"):
                entry["error"] = message.meta["error"]
            timeline.append(entry)

        return {
            "message_id": message.id,
            "current_status": message.status.value,
            "retry_count": message.retry_count,
            "timeline": timeline,
        }
