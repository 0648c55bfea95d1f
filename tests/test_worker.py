"""Tests for the ARQ job functions and worker settings."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import structlog
from arq import Retry
from sqlalchemy import select

from chatrelay.models.webhook import WebhookDeliveryLog
from chatrelay.schemas import MAX_WEBHOOK_TIMEOUT_MS, WebhookConfig, WebhookEvent
from chatrelay.services.job_queue import MESSAGE_STATUS_QUEUE, WEBHOOK_DELIVERY_QUEUE
from chatrelay.services.webhook_router import DeliveryResult, WebhookRouter
from chatrelay.worker import (
    MessageWorkerSettings,
    WorkerSettings,
    deliver_webhook,
    resend_message,
    update_message_status,
)
from conftest import TENANT


def delivered_event() -> WebhookEvent:
    return WebhookEvent(
        type="message.delivered",
        tenant_id=TENANT,
        data={"messageId": "msg-1", "status": "delivered", "error": None},
    )


async def run_until_done(router: WebhookRouter, job: dict) -> tuple[dict, list[int]]:
    """Drive a queued delivery job the way ARQ would, collecting retry delays."""
    delays = []
    job_try = 1
    while True:
        ctx = {"job_try": job_try, "router": router}
        try:
            return await deliver_webhook(ctx, job["payload"], job["options"].to_dict()), delays
        except Retry as retry:
            delays.append(retry.defer_score)
            job_try += 1


async def fetch_logs(session_factory) -> list[WebhookDeliveryLog]:
    async with session_factory() as db:
        stmt = select(WebhookDeliveryLog).order_by(WebhookDeliveryLog.attempt_number)
        return list((await db.execute(stmt)).scalars().all())


class TestDeliverWebhookJob:
    @pytest.mark.asyncio
    async def test_always_failing_endpoint_is_attempted_retry_count_times(
        self, queue, session_factory, make_webhook
    ) -> None:
        await make_webhook(retry_count=3)
        router = WebhookRouter(
            queue,
            session_factory,
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down")),
        )
        await router.route_event(delivered_event())
        [job] = queue.jobs

        result, delays = await run_until_done(router, job)

        assert result["success"] is False
        assert result["status_code"] == 500
        assert delays == [2000, 4000]
        logs = await fetch_logs(session_factory)
        assert [log.attempt_number for log in logs] == [1, 2, 3]
        assert all(log.success is False for log in logs)

    @pytest.mark.asyncio
    async def test_single_attempt_webhook_without_secret(
        self, queue, session_factory, make_webhook
    ) -> None:
        await make_webhook(events=["message.delivered"], retry_count=1)
        headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers)
            return httpx.Response(200)

        router = WebhookRouter(queue, session_factory, transport=httpx.MockTransport(handler))
        await router.route_event(delivered_event())
        [job] = queue.jobs

        result, delays = await run_until_done(router, job)

        assert result["success"] is True
        assert delays == []
        [log] = await fetch_logs(session_factory)
        assert log.attempt_number == 1
        assert "X-Webhook-Signature" not in headers[0]

    @pytest.mark.asyncio
    async def test_recovers_on_later_attempt(self, queue, session_factory, make_webhook) -> None:
        await make_webhook(retry_count=3)
        responses = [httpx.Response(502), httpx.Response(200)]
        router = WebhookRouter(
            queue,
            session_factory,
            transport=httpx.MockTransport(lambda request: responses.pop(0)),
        )
        await router.route_event(delivered_event())

        result, delays = await run_until_done(router, queue.jobs[0])

        assert result["success"] is True
        assert delays == [2000]
        logs = await fetch_logs(session_factory)
        assert [(log.attempt_number, log.success) for log in logs] == [(1, False), (2, True)]


class TestMessageJobs:
    @pytest.mark.asyncio
    async def test_update_message_status_calls_tracker(self) -> None:
        tracker = MagicMock()
        tracker.update_status = AsyncMock(return_value=True)

        result = await update_message_status(
            {"tracker": tracker},
            {"messageId": "msg-1", "status": "delivered", "error": None},
        )

        tracker.update_status.assert_awaited_once_with("msg-1", "delivered", None)
        assert result == {"message_id": "msg-1", "updated": True}

    @pytest.mark.asyncio
    async def test_resend_message_calls_sender(self) -> None:
        sender = MagicMock()
        sender.resend = AsyncMock(return_value=False)

        result = await resend_message({"sender": sender}, {"messageId": "msg-1", "retryCount": 2})

        sender.resend.assert_awaited_once_with("msg-1")
        assert result == {"message_id": "msg-1", "retry_count": 2, "success": False}


class TestWorkerSettings:
    def test_queues(self) -> None:
        assert WorkerSettings.queue_name == WEBHOOK_DELIVERY_QUEUE
        assert MessageWorkerSettings.queue_name == MESSAGE_STATUS_QUEUE

    def test_registered_functions(self) -> None:
        assert [f.name for f in WorkerSettings.functions] == ["deliver_webhook"]
        assert [f.name for f in MessageWorkerSettings.functions] == ["update_message_status", "resend_message"]

    def test_delivery_job_outlives_the_slowest_allowed_attempt(self) -> None:
        """The job timeout leaves room for the log write after a full-length attempt."""
        assert WorkerSettings.job_timeout >= MAX_WEBHOOK_TIMEOUT_MS / 1000 + 10


class TestJobLogContext:
    @pytest.mark.asyncio
    async def test_message_jobs_bind_message_id(self) -> None:
        seen = {}

        async def update_status(message_id, status, error):
            seen.update(structlog.contextvars.get_contextvars())
            return True

        tracker = MagicMock()
        tracker.update_status = update_status

        await update_message_status({"tracker": tracker}, {"messageId": "msg-7", "status": "read"})

        assert seen["message_id"] == "msg-7"
        assert "message_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_delivery_job_binds_webhook_id(self) -> None:
        seen = {}
        router = MagicMock()

        async def deliver(webhook_id, webhook, event, attempt_number=1):
            seen.update(structlog.contextvars.get_contextvars())
            return DeliveryResult(success=True, duration=5, status_code=200)

        router.deliver_webhook = deliver
        webhook = WebhookConfig(id="wh-1", tenant_id=TENANT, name="crm", url="https://x.example.com")
        payload = {
            "webhookId": "wh-1",
            "webhook": webhook.model_dump(),
            "event": delivered_event().model_dump(),
        }

        result = await deliver_webhook({"job_try": 1, "router": router}, payload)

        assert result["success"] is True
        assert seen["webhook_id"] == "wh-1"
        assert seen["tenant_id"] == TENANT
        assert "webhook_id" not in structlog.contextvars.get_contextvars()
