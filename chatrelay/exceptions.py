"""
Domain exceptions for ChatRelay.

Only conditions a caller is expected to handle are raised; delivery and
status-tracking failures are logged instead (see the services).
"""
import math
from typing import Optional


class ChatRelayError(Exception):
    """Base exception for the delivery pipeline."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class RateLimitExceeded(ChatRelayError):
    """A tenant/session pair hit its outbound message quota."""

    def __init__(self, tenant_id: str, session_id: str, reset_in_ms: int):
        self.tenant_id = tenant_id
        self.session_id = session_id
        self.reset_in_ms = reset_in_ms
        super().__init__(
            f"Rate limit exceeded. Try again in {self.retry_after} seconds",
            {"tenant_id": tenant_id, "session_id": session_id},
        )

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, math.ceil(self.reset_in_ms / 1000))


class NotFoundError(ChatRelayError):
    """Resource not found for the requesting tenant."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        details = {"id": identifier} if identifier else {}
        super().__init__(f"{resource} not found", details)
