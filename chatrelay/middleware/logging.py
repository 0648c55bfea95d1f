"""
Request logging middleware.

One ``request_completed`` (or ``request_failed``) line per API call, plus the
request counters on /metrics. Provider callbacks and webhook admin calls go
through here too, so a request id is bound for correlating their logs.
"""
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.routes.metrics import track_request

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, route, status and duration of every request.

    The tenant is only known once the auth dependency ran, so it is read
    from ``request.state`` after the response. The request id is taken from
    ``X-Request-ID`` when the caller sends one and echoed back.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        log = logger.bind(route=request.url.path, method=request.method)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            log.error(
                "request_failed",
                tenant_id=getattr(request.state, "tenant_id", None),
                status_code=500,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                error=str(e)
            )
            raise

        duration = time.perf_counter() - start
        track_request(request.method, request.url.path, response.status_code, duration)

        log.info(
            "request_completed",
            tenant_id=getattr(request.state, "tenant_id", None),
            user_id=getattr(request.state, "user_id", None),
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
