"""API tests through the ASGI app with an in-memory database."""

import httpx
import pytest
import pytest_asyncio

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.main import app
from chatrelay.models.message import MessageStatus
from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.jwt_service import JWTService
from chatrelay.services.message_sender import MessageSender, SendResult
from chatrelay.services.rate_limiter import RateLimitConfig, RateLimiter
from chatrelay.services.webhook_router import WebhookRouter, generate_signature
from conftest import OTHER_TENANT, TENANT


class StaticProvider:
    async def send(self, to, payload):
        return SendResult(success=True, provider_message_id="wamid-1")


def auth(tenant_id: str = TENANT) -> dict:
    token = JWTService().create_token("user-1", tenant_id, "admin", "ops@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, queue):
    """HTTP client against the app, wired to the test database and queue."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    router = WebhookRouter(queue, session_factory)
    tracker = DeliveryStatusTracker(router, queue, session_factory)
    limiter = RateLimiter(RateLimitConfig(max_messages=2, window_ms=60_000))

    app.dependency_overrides[get_db] = override_get_db
    app.state.webhook_router = router
    app.state.status_tracker = tracker
    app.state.rate_limiter = limiter
    app.state.message_sender = MessageSender(limiter, StaticProvider(), tracker, session_factory)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


WEBHOOK_BODY = {
    "name": "CRM sync",
    "url": "https://hooks.example.com/chatrelay",
    "events": ["message.delivered", "message.read"],
    "secret": "whsec_1",
}


class TestPublicEndpoints:
    @pytest.mark.asyncio
    async def test_root_and_health(self, client) -> None:
        assert (await client.get("/")).json()["name"] == "ChatRelay"
        assert (await client.get("/health")).json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client) -> None:
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

        generated = await client.get("/health")
        assert len(generated.headers["X-Request-ID"]) == 32

    @pytest.mark.asyncio
    async def test_metrics(self, client) -> None:
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "webhook_delivery_attempts_total" in response.text

    @pytest.mark.asyncio
    async def test_tenant_routes_require_token(self, client) -> None:
        response = await client.get("/api/webhooks")
        assert response.status_code in (401, 403)

        response = await client.get("/api/webhooks", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401


class TestWebhookRoutes:
    @pytest.mark.asyncio
    async def test_crud(self, client) -> None:
        created = await client.post("/api/webhooks", json=WEBHOOK_BODY, headers=auth())
        assert created.status_code == 201
        webhook = created.json()
        assert webhook["has_secret"] is True
        assert "secret" not in webhook
        assert webhook["retry_count"] == 3
        assert webhook["timeout_ms"] == 5000

        listed = await client.get("/api/webhooks", headers=auth())
        assert [w["id"] for w in listed.json()["webhooks"]] == [webhook["id"]]

        patched = await client.patch(
            f"/api/webhooks/{webhook['id']}",
            json={"events": ["message.failed"], "is_active": False},
            headers=auth(),
        )
        assert patched.json()["events"] == ["message.failed"]
        assert patched.json()["is_active"] is False

        deleted = await client.delete(f"/api/webhooks/{webhook['id']}", headers=auth())
        assert deleted.status_code == 200
        assert (await client.get(f"/api/webhooks/{webhook['id']}", headers=auth())).status_code == 404

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_webhook(self, client) -> None:
        webhook = (await client.post("/api/webhooks", json=WEBHOOK_BODY, headers=auth())).json()

        response = await client.get(f"/api/webhooks/{webhook['id']}", headers=auth(OTHER_TENANT))
        assert response.status_code == 404
        listed = await client.get("/api/webhooks", headers=auth(OTHER_TENANT))
        assert listed.json()["webhooks"] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("override", [
        {"url": "ftp://hooks.example.com"},
        {"events": []},
        {"retry_count": 0},
        {"timeout_ms": 0},
        {"timeout_ms": 60_001},
    ])
    async def test_invalid_webhook_rejected(self, client, override) -> None:
        response = await client.post("/api/webhooks", json={**WEBHOOK_BODY, **override}, headers=auth())
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_emit_routes_to_subscribers(self, client, queue) -> None:
        await client.post("/api/webhooks", json=WEBHOOK_BODY, headers=auth())

        response = await client.post(
            "/api/webhooks/emit",
            json={"type": "message.read", "data": {"messageId": "m1"}},
            headers=auth(),
        )

        assert response.json() == {"event": "message.read", "queued": 1}
        assert queue.jobs[0]["payload"]["event"]["tenant_id"] == TENANT

    @pytest.mark.asyncio
    async def test_stats_and_logs(self, client) -> None:
        webhook = (await client.post("/api/webhooks", json=WEBHOOK_BODY, headers=auth())).json()

        stats = await client.get(f"/api/webhooks/{webhook['id']}/stats", headers=auth())
        assert stats.json()["total"] == 0
        assert stats.json()["success_rate"] == "0%"

        logs = await client.get(f"/api/webhooks/{webhook['id']}/logs", headers=auth())
        assert logs.json()["logs"] == []
        assert logs.json()["total"] == 0


class TestMessageRoutes:
    @pytest.mark.asyncio
    async def test_send_then_rate_limited(self, client, make_conversation) -> None:
        conversation = await make_conversation()
        body = {"session_id": "session-1", "conversation_id": conversation.id, "to": "+55", "text": "Oi!"}

        for _ in range(2):
            response = await client.post("/api/messages", json=body, headers=auth())
            assert response.status_code == 201
            assert response.json()["status"] == "sent"

        limited = await client.post("/api/messages", json=body, headers=auth())
        assert limited.status_code == 429
        assert 1 <= int(limited.headers["Retry-After"]) <= 60
        assert "Try again in" in limited.json()["detail"]

        status = await client.get("/api/messages/rate-limit", params={"session_id": "session-1"}, headers=auth())
        assert status.json()["remaining"] == 0
        assert status.json()["is_limited"] is True

    @pytest.mark.asyncio
    async def test_send_to_unknown_conversation(self, client) -> None:
        body = {"session_id": "session-1", "conversation_id": "nope", "to": "+55", "text": "Oi!"}
        response = await client.post("/api/messages", json=body, headers=auth())
        assert response.status_code == 404


class TestDeliveryRoutes:
    @pytest.mark.asyncio
    async def test_stats(self, client, make_message) -> None:
        await make_message(status=MessageStatus.READ)

        response = await client.get("/api/delivery/stats", params={"time_range": "week"}, headers=auth())

        assert response.json()["total"] == 1
        assert response.json()["rates"]["read"] == "100.00%"

    @pytest.mark.asyncio
    async def test_stats_rejects_unknown_range(self, client) -> None:
        response = await client.get("/api/delivery/stats", params={"time_range": "year"}, headers=auth())
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_failed_and_timeline(self, client, make_message) -> None:
        failed = await make_message(status=MessageStatus.FAILED, meta={"error": "boom"})

        listed = await client.get("/api/delivery/failed", headers=auth())
        assert listed.json()["count"] == 1

        timeline = await client.get(f"/api/delivery/{failed.id}/timeline", headers=auth())
        assert timeline.json()["current_status"] == "failed"

        missing = await client.get(f"/api/delivery/{failed.id}/timeline", headers=auth(OTHER_TENANT))
        assert missing.status_code == 404


class TestProviderCallback:
    @pytest.fixture(autouse=True)
    def provider_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "PROVIDER_WEBHOOK_SECRET", "provider-secret")

    @pytest.mark.asyncio
    async def test_signed_callback_queues_normalized_update(self, client, queue, make_message) -> None:
        message = await make_message(status=MessageStatus.SENT, provider_message_id="wamid-77")
        body = b'{"provider_message_id":"wamid-77","status":"DELIVERY_ACK"}'

        response = await client.post(
            "/api/delivery/callback",
            content=body,
            headers={"X-Webhook-Signature": generate_signature(body, "provider-secret")},
        )

        assert response.status_code == 202
        assert response.json()["accepted"] is True
        [job] = queue.jobs
        assert job["type"] == "update_message_status"
        assert job["payload"] == {"messageId": message.id, "status": "delivered", "error": None}

    @pytest.mark.asyncio
    async def test_tampered_callback_rejected(self, client, queue) -> None:
        body = b'{"provider_message_id":"wamid-77","status":"READ"}'
        signature = generate_signature(body, "provider-secret")

        response = await client.post(
            "/api/delivery/callback",
            content=body.replace(b"READ", b"SENT"),
            headers={"X-Webhook-Signature": signature},
        )

        assert response.status_code == 401
        assert queue.jobs == []

    @pytest.mark.asyncio
    async def test_unknown_status_is_acknowledged_and_ignored(self, client, queue) -> None:
        body = b'{"provider_message_id":"wamid-77","status":"TYPING"}'

        response = await client.post(
            "/api/delivery/callback",
            content=body,
            headers={"X-Webhook-Signature": generate_signature(body, "provider-secret")},
        )

        assert response.status_code == 202
        assert response.json()["accepted"] is False
        assert queue.jobs == []
