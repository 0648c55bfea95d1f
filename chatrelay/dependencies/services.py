"""
Service dependencies for FastAPI routes.

The delivery services are built once in the application lifespan and kept
on ``app.state``; routes receive them through these dependencies.
"""
from fastapi import Request

from chatrelay.services.delivery_status import DeliveryStatusTracker
from chatrelay.services.message_sender import MessageSender
from chatrelay.services.rate_limiter import RateLimiter
from chatrelay.services.webhook_router import WebhookRouter


def get_webhook_router(request: Request) -> WebhookRouter:
    return request.app.state.webhook_router


def get_status_tracker(request: Request) -> DeliveryStatusTracker:
    return request.app.state.status_tracker


def get_message_sender(request: Request) -> MessageSender:
    return request.app.state.message_sender


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter
