"""
Rate limit error mapping for FastAPI routes.
"""
from fastapi import HTTPException
from chatrelay.exceptions import RateLimitExceeded


def rate_limit_http_error(exc: RateLimitExceeded) -> HTTPException:
    """
    Translate a send-path rate limit into a 429.

    ``Retry-After`` carries the whole seconds left in the window.
    """
    return HTTPException(
        status_code=429,
        detail=exc.message,
        headers={"Retry-After": str(exc.retry_after)}
    )
