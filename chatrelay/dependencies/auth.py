"""
Authentication dependencies for FastAPI.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ValidationError
from chatrelay.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id
    tenant_id: str
    role: str = "member"
    email: str = ""


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid. The tenant is
    also put on ``request.state`` for the logging middleware and bound into
    the log context.
    """
    payload = JWTService().verify_token(credentials.credentials)

    try:
        user = TokenPayload(**payload) if payload is not None else None
    except ValidationError:
        user = None

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.tenant_id = user.tenant_id
    request.state.user_id = user.sub
    structlog.contextvars.bind_contextvars(tenant_id=user.tenant_id)
    return user
