"""Shared fixtures: in-memory database, recording job queue, row factories."""

from datetime import datetime
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import chatrelay.main  # noqa: F401  configures logging before it is adjusted below
from chatrelay.models.base import Base
from chatrelay.models.message import Conversation, Message, MessageStatus
from chatrelay.models.webhook import Webhook
from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.job_queue import JobOptions
from chatrelay.services.webhook_router import WebhookRouter

# Loggers must not be cached so structlog.testing.capture_logs sees every call.
structlog.configure(cache_logger_on_first_use=False)

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


class RecordingQueue:
    """JobQueue that keeps enqueued jobs in memory."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []
        self.fail = False

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Optional[str]:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.jobs.append({
            "queue": queue_name,
            "type": job_type,
            "payload": payload,
            "options": options or JobOptions(),
        })
        return f"job-{len(self.jobs)}"

    def of_type(self, job_type: str) -> list[dict[str, Any]]:
        return [job for job in self.jobs if job["type"] == job_type]


def broken_session_factory():
    """Session factory standing in for an unreachable database."""
    raise ConnectionError("database unavailable")


@pytest_asyncio.fixture
async def session_factory():
    """Async session factory bound to a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def mock_router() -> MagicMock:
    """Router stand-in for tracker tests; records routed events."""
    router = MagicMock(spec=WebhookRouter)
    router.route_event = AsyncMock(return_value=0)
    return router


@pytest.fixture
def tracker(mock_router: MagicMock, queue: RecordingQueue, session_factory) -> DeliveryStatusTracker:
    return DeliveryStatusTracker(mock_router, queue, session_factory)


@pytest.fixture
def make_webhook(session_factory):
    """Insert a webhook row and return it."""

    async def _make(
        tenant_id: str = TENANT,
        events: Optional[list[str]] = None,
        **fields: Any,
    ) -> Webhook:
        fields.setdefault("name", "CRM sync")
        fields.setdefault("url", "https://hooks.example.com/chatrelay")
        webhook = Webhook(
            tenant_id=tenant_id,
            events=events if events is not None else ["message.delivered"],
            **fields,
        )
        async with session_factory() as db:
            db.add(webhook)
            await db.commit()
        return webhook

    return _make


@pytest.fixture
def make_conversation(session_factory):
    """Insert a conversation row and return it."""

    async def _make(tenant_id: str = TENANT, **fields: Any) -> Conversation:
        fields.setdefault("session_id", "session-1")
        fields.setdefault("contact_name", "Ana")
        fields.setdefault("contact_phone", "+5511999990000")
        conversation = Conversation(tenant_id=tenant_id, **fields)
        async with session_factory() as db:
            db.add(conversation)
            await db.commit()
        return conversation

    return _make


@pytest.fixture
def make_message(session_factory, make_conversation):
    """Insert a message (and its conversation, if none given) and return it."""

    async def _make(
        tenant_id: str = TENANT,
        status: MessageStatus = MessageStatus.PENDING,
        meta: Optional[dict] = None,
        conversation: Optional[Conversation] = None,
        created_at: Optional[datetime] = None,
        **fields: Any,
    ) -> Message:
        conversation = conversation or await make_conversation(tenant_id=tenant_id)
        fields.setdefault("content", "Hello!")
        fields.setdefault("is_from_me", True)
        if created_at is not None:
            fields["created_at"] = created_at
            fields["updated_at"] = created_at
        message = Message(
            tenant_id=tenant_id,
            conversation_id=conversation.id,
            status=status,
            meta=meta if meta is not None else {},
            **fields,
        )
        async with session_factory() as db:
            db.add(message)
            await db.commit()
        return message

    return _make


@pytest.fixture
def load_message(session_factory):
    """Re-read a message from the database."""

    async def _load(message_id: str) -> Optional[Message]:
        async with session_factory() as db:
            return await db.get(Message, message_id)

    return _load
