"""
Message API routes.

Outgoing sends go through the per-session rate limiter.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from chatrelay.dependencies.auth import get_current_user, TokenPayload
from chatrelay.dependencies.rate_limit import rate_limit_http_error
from chatrelay.dependencies.services import get_message_sender, get_rate_limiter
from chatrelay.exceptions import NotFoundError, RateLimitExceeded
from chatrelay.services.message_sender import MessageSender
from chatrelay.services.rate_limiter import RateLimiter


router = APIRouter(prefix="/api/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    """Request model for sending a text message."""
    session_id: str = Field(min_length=1)
    conversation_id: str
    to: str = Field(min_length=1)
    text: str = Field(min_length=1)


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def send_message(
    request: SendMessageRequest,
    token: TokenPayload = Depends(get_current_user),
    sender: MessageSender = Depends(get_message_sender)
):
    """
    Send a message on one of the tenant's sessions.

    Returns 429 with ``Retry-After`` once the session's quota is used up.
    """
    try:
        return await sender.send_message(
            tenant_id=token.tenant_id,
            session_id=request.session_id,
            conversation_id=request.conversation_id,
            to=request.to,
            text=request.text,
        )
    except RateLimitExceeded as e:
        raise rate_limit_http_error(e)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=e.message
        )


@router.get("/rate-limit", response_model=dict)
async def get_rate_limit_status(
    session_id: str = Query(min_length=1),
    token: TokenPayload = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter)
):
    """Remaining quota of a session."""
    return {
        "session_id": session_id,
        "limit": limiter.default_config.max_messages,
        "window_ms": limiter.default_config.window_ms,
        **limiter.get_status(token.tenant_id, session_id),
    }
