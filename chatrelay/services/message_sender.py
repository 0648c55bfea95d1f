"""
Outbound message send path.

Consults the rate limiter, stores the message, calls the messaging
provider and hands the outcome to the delivery status tracker. Scheduled
resends of failed messages come back through ``MessageSender.resend``.
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from chatrelay.config import settings
from chatrelay.database import AsyncSessionLocal
from chatrelay.exceptions import NotFoundError, RateLimitExceeded
from chatrelay.models.message import Conversation, Message, MessageStatus
from chatrelay.routes.metrics import track_rate_limit_exceeded
from chatrelay.sentry_config import capture_exception
from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.rate_limiter import RateLimiter

logger = structlog.get_logger()


@dataclass
class SendResult:
    """Provider response to one send."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class MessagingProvider(Protocol):
    async def send(self, to: str, payload: dict[str, Any]) -> SendResult:
        ...


class HttpMessagingProvider:
    """Messaging provider reached over its HTTP API."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.PROVIDER_API_URL
        self.api_key = api_key if api_key is not None else settings.PROVIDER_API_KEY
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, to: str, payload: dict[str, Any]) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/messages", json={"to": to, **payload}, headers=headers)
        except httpx.HTTPError as e:
            return SendResult(success=False, error=str(e) or e.__class__.__name__)

        if not response.is_success:
            return SendResult(success=False, error=f"Provider returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        return SendResult(success=True, provider_message_id=body.get("id") or body.get("message_id"))


class MessageSender:
    """Sends outgoing messages and resends failed ones."""

    def __init__(
        self,
        limiter: RateLimiter,
        provider: MessagingProvider,
        tracker: DeliveryStatusTracker,
        session_factory: async_sessionmaker[AsyncSession] = None,
    ):
        self._limiter = limiter
        self._provider = provider
        self._tracker = tracker
        self._session_factory = session_factory or AsyncSessionLocal

    async def send_message(
        self,
        tenant_id: str,
        session_id: str,
        conversation_id: str,
        to: str,
        text: str,
    ) -> dict:
        """
        Send a text message on a tenant's session.

        Raises:
            RateLimitExceeded: the session used up its quota for the window.
            NotFoundError: the conversation does not belong to the tenant.
        """
        log = logger.bind(tenant_id=tenant_id, session_id=session_id)

        if not self._limiter.try_acquire(tenant_id, session_id):
            reset_in_ms = self._limiter.get_reset_time(tenant_id, session_id)
            track_rate_limit_exceeded(tenant_id)
            log.warning("message_rate_limited", reset_in_ms=reset_in_ms)
            raise RateLimitExceeded(tenant_id, session_id, reset_in_ms)

        try:
            message_id = await self._create_pending(tenant_id, conversation_id, text)
        except Exception:
            # Nothing reached the provider, so the slot is not used
            self._limiter.release(tenant_id, session_id)
            raise

        result = await self._dispatch(message_id, to, text)
        await self._record_outcome(message_id, result)

        log.info("message_sent" if result.success else "message_send_failed",
                 message_id=message_id, error=result.error)

        return {
            "message_id": message_id,
            "status": (MessageStatus.SENT if result.success else MessageStatus.FAILED).value,
            "provider_message_id": result.provider_message_id,
            "error": result.error,
        }

    async def resend(self, message_id: str) -> bool:
        """
        Re-send a failed message. Called by the ``resend_message`` job.

        Returns False when the message is gone, no longer failed, or its
        retries are exhausted.
        """
        log = logger.bind(message_id=message_id)

        async with self._session_factory() as db:
            message = await db.scalar(
                select(Message)
                .options(selectinload(Message.conversation))
                .where(Message.id == message_id)
            )
            if message is None:
                log.warning("resend_message_not_found")
                return False
            if message.status != MessageStatus.FAILED:
                log.info("resend_skipped", status=message.status.value)
                return False

            to = message.conversation.contact_phone if message.conversation else None
            text = message.content or ""

        if not to:
            log.warning("resend_no_recipient")
            return False

        if not await self._tracker.update_status(message_id, MessageStatus.PENDING):
            return False

        result = await self._dispatch(message_id, to, text)
        await self._record_outcome(message_id, result)

        log.info("message_resent", success=result.success, error=result.error)
        return result.success

    async def _create_pending(self, tenant_id: str, conversation_id: str, text: str) -> str:
        async with self._session_factory() as db:
            conversation = await db.scalar(
                select(Conversation).where(
                    Conversation.id == conversation_id,
                    Conversation.tenant_id == tenant_id,
                )
            )
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)

            message = Message(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                content=text,
                is_from_me=True,
                status=MessageStatus.PENDING,
                meta={"retryCount": 0},
            )
            db.add(message)
            await db.commit()
            return message.id

    async def _dispatch(self, message_id: str, to: str, text: str) -> SendResult:
        try:
            return await self._provider.send(to, {"type": "text", "text": text})
        except Exception as e:
            logger.error("provider_send_failed", message_id=message_id, error=str(e))
            capture_exception()
            return SendResult(success=False, error=str(e) or e.__class__.__name__)

    async def _record_outcome(self, message_id: str, result: SendResult) -> None:
        if not result.success:
            await self._tracker.update_status(message_id, MessageStatus.FAILED, result.error or "Send failed")
            return

        if result.provider_message_id:
            async with self._session_factory() as db:
                message = await db.get(Message, message_id)
                if message is not None:
                    message.provider_message_id = result.provider_message_id
                    await db.commit()

        await self._tracker.update_status(message_id, MessageStatus.SENT)
