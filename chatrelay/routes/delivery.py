"""
Delivery status API routes.

Operator views of message delivery, plus the provider's status callback.
"""
import json
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.dependencies.auth import get_current_user, TokenPayload
from chatrelay.dependencies.services import get_status_tracker
from chatrelay.models.message import Message
from chatrelay.services.delivery_status import DeliveryStatusTracker, normalize_provider_status
from chatrelay.services.webhook_router import verify_signature

logger = structlog.get_logger()

router = APIRouter(prefix="/api/delivery", tags=["delivery"])


class ProviderStatusCallback(BaseModel):
    """Status notification sent by the messaging provider."""
    provider_message_id: str
    status: str
    error: Optional[str] = None


@router.get("/stats", response_model=dict)
async def get_delivery_stats(
    time_range: Literal["hour", "day", "week", "month"] = "day",
    token: TokenPayload = Depends(get_current_user),
    tracker: DeliveryStatusTracker = Depends(get_status_tracker)
):
    """Delivery counts and rates of outgoing messages."""
    return await tracker.get_delivery_stats(token.tenant_id, time_range)


@router.get("/failed", response_model=dict)
async def get_failed_messages(
    limit: int = Query(default=50, ge=1, le=200),
    token: TokenPayload = Depends(get_current_user),
    tracker: DeliveryStatusTracker = Depends(get_status_tracker)
):
    """Most recent failed messages."""
    messages = await tracker.get_failed_messages(token.tenant_id, limit=limit)
    return {"messages": messages, "count": len(messages)}


@router.get("/{message_id}/timeline", response_model=dict)
async def get_delivery_timeline(
    message_id: str,
    token: TokenPayload = Depends(get_current_user),
    tracker: DeliveryStatusTracker = Depends(get_status_tracker)
):
    """Status history of one message."""
    timeline = await tracker.get_delivery_timeline(message_id, tenant_id=token.tenant_id)

    if timeline is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found"
        )
    return timeline


@router.post("/callback", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def provider_callback(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    tracker: DeliveryStatusTracker = Depends(get_status_tracker)
):
    """
    Receive a delivery status from the messaging provider.

    The signature is checked against the raw body before it is parsed. The
    update itself is queued so the provider gets an answer immediately.
    """
    body = await request.body()

    secret = settings.PROVIDER_WEBHOOK_SECRET
    if secret and not verify_signature(body, x_webhook_signature, secret):
        logger.warning("provider_callback_bad_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    try:
        callback = ProviderStatusCallback.model_validate(json.loads(body))
    except (ValueError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid callback payload"
        )

    new_status = normalize_provider_status(callback.status)
    if new_status is None:
        logger.info("provider_callback_unknown_status", status=callback.status)
        return {"accepted": False, "reason": "unknown status"}

    stmt = select(Message.id).where(Message.provider_message_id == callback.provider_message_id)
    message_id = (await db.execute(stmt)).scalars().first()

    if message_id is None:
        logger.info("provider_callback_unknown_message", provider_message_id=callback.provider_message_id)
        return {"accepted": False, "reason": "unknown message"}

    await tracker.enqueue_status_update(message_id, new_status, callback.error)

    return {"accepted": True, "message_id": message_id, "status": new_status.value}
