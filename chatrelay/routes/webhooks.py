"""
Webhook API routes.

Tenants register endpoints for event types, inspect delivery stats and
logs, and can emit custom events through the same router.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.dependencies.auth import get_current_user, TokenPayload
from chatrelay.dependencies.services import get_webhook_router
from chatrelay.models.webhook import Webhook
from chatrelay.schemas import MAX_WEBHOOK_TIMEOUT_MS, WebhookEvent
from chatrelay.services.job_queue import MAX_JOB_TRIES
from chatrelay.services.webhook_router import WebhookRouter


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _check_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        raise ValueError("url must be an http(s) URL")
    return url


def _check_events(events: list[str]) -> list[str]:
    cleaned = [e.strip() for e in events if e and e.strip()]
    if not cleaned:
        raise ValueError("at least one event type is required")
    return cleaned


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    name: str = Field(min_length=1, max_length=255)
    url: str
    events: list[str]
    secret: Optional[str] = None
    is_active: bool = True
    retry_count: int = Field(default=settings.WEBHOOK_DEFAULT_RETRY_COUNT, ge=1, le=MAX_JOB_TRIES)
    timeout_ms: int = Field(default=settings.WEBHOOK_DEFAULT_TIMEOUT_MS, gt=0, le=MAX_WEBHOOK_TIMEOUT_MS)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v):
        return _check_events(v)


class UpdateWebhookRequest(BaseModel):
    """Partial update; only the fields sent are changed."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    url: Optional[str] = None
    events: Optional[list[str]] = None
    secret: Optional[str] = None
    is_active: Optional[bool] = None
    retry_count: Optional[int] = Field(default=None, ge=1, le=MAX_JOB_TRIES)
    timeout_ms: Optional[int] = Field(default=None, gt=0, le=MAX_WEBHOOK_TIMEOUT_MS)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v) if v is not None else v

    @field_validator("events")
    @classmethod
    def validate_events(cls, v):
        return _check_events(v) if v is not None else v


class EmitEventRequest(BaseModel):
    """A custom event to fan out to the tenant's webhooks."""
    type: str = Field(min_length=1, max_length=100)
    session_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


def serialize_webhook(webhook: Webhook) -> dict:
    """Webhook as returned by the API. The secret itself is never returned."""
    return {
        "id": webhook.id,
        "name": webhook.name,
        "url": webhook.url,
        "events": webhook.events,
        "is_active": webhook.is_active,
        "retry_count": webhook.retry_count,
        "timeout_ms": webhook.timeout_ms,
        "has_secret": bool(webhook.secret),
        "created_at": webhook.created_at.isoformat() if webhook.created_at else None,
        "updated_at": webhook.updated_at.isoformat() if webhook.updated_at else None,
    }


async def _get_tenant_webhook(db: AsyncSession, tenant_id: str, webhook_id: str) -> Webhook:
    stmt = select(Webhook).where(
        Webhook.id == webhook_id,
        Webhook.tenant_id == tenant_id,
    )
    webhook = (await db.execute(stmt)).scalar_one_or_none()

    if not webhook:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )
    return webhook


@router.get("", response_model=dict)
async def list_webhooks(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the tenant's webhooks, newest first."""
    stmt = (
        select(Webhook)
        .where(Webhook.tenant_id == token.tenant_id)
        .order_by(Webhook.created_at.desc())
    )
    webhooks = (await db.execute(stmt)).scalars().all()

    return {"webhooks": [serialize_webhook(w) for w in webhooks]}


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a webhook.

    The endpoint will receive signed POST requests for each subscribed
    event type.
    """
    webhook = Webhook(tenant_id=token.tenant_id, **request.model_dump())
    db.add(webhook)
    await db.commit()
    await db.refresh(webhook)

    return serialize_webhook(webhook)


@router.post("/emit", response_model=dict)
async def emit_event(
    request: EmitEventRequest,
    token: TokenPayload = Depends(get_current_user),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
):
    """Route a custom event to the tenant's subscribed webhooks."""
    event = WebhookEvent(
        type=request.type,
        tenant_id=token.tenant_id,
        session_id=request.session_id,
        data=request.data,
    )
    queued = await webhook_router.route_event(event)

    return {"event": event.type, "queued": queued}


@router.get("/{webhook_id}", response_model=dict)
async def get_webhook(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get one webhook."""
    webhook = await _get_tenant_webhook(db, token.tenant_id, webhook_id)
    return serialize_webhook(webhook)


@router.patch("/{webhook_id}", response_model=dict)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Update a webhook. Takes effect on the next routed event."""
    webhook = await _get_tenant_webhook(db, token.tenant_id, webhook_id)

    for field, value in request.model_dump(exclude_unset=True).items():
        if value is None and field != "secret":
            continue
        setattr(webhook, field, value)

    await db.commit()
    await db.refresh(webhook)

    return serialize_webhook(webhook)


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Delete a webhook together with its delivery logs."""
    webhook = await _get_tenant_webhook(db, token.tenant_id, webhook_id)

    await db.delete(webhook)
    await db.commit()

    return {"message": "Webhook deleted successfully"}


@router.get("/{webhook_id}/stats", response_model=dict)
async def get_webhook_stats(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
):
    """Delivery stats for the last 24 hours."""
    await _get_tenant_webhook(db, token.tenant_id, webhook_id)

    stats = await webhook_router.get_webhook_stats(token.tenant_id, webhook_id)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook stats unavailable"
        )

    return {"webhook_id": webhook_id, **stats}


@router.get("/{webhook_id}/logs", response_model=dict)
async def get_webhook_logs(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
):
    """Delivery attempts for a webhook, newest first."""
    await _get_tenant_webhook(db, token.tenant_id, webhook_id)

    logs, total = await webhook_router.get_webhook_logs(
        webhook_id, token.tenant_id, limit=limit, offset=offset
    )

    return {
        "logs": [
            {
                "id": log.id,
                "event_type": log.event_type,
                "attempt_number": log.attempt_number,
                "success": log.success,
                "response_status": log.response_status,
                "response_body": log.response_body,
                "error_message": log.error_message,
                "duration_ms": log.duration_ms,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
