"""
Value objects passed between the tracker, the router and the queue.

These are what gets serialized into delivery jobs, so they must stay
JSON-friendly.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Upper bound for a single delivery attempt; the worker job timeout is sized from it
MAX_WEBHOOK_TIMEOUT_MS = 60_000


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookEvent(BaseModel):
    """An internal event to fan out, e.g. ``message.delivered``."""
    type: str
    tenant_id: str
    session_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=iso_now)


class WebhookConfig(BaseModel):
    """Snapshot of a webhook row, carried inside each delivery job."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    url: str
    secret: Optional[str] = None
    events: list[str] = Field(default_factory=list)
    is_active: bool = True
    retry_count: int = Field(default=3, ge=1)
    timeout_ms: int = Field(default=5000, gt=0, le=MAX_WEBHOOK_TIMEOUT_MS)

    def subscribes_to(self, event_type: str) -> bool:
        """Exact string containment, no wildcards."""
        return self.is_active and event_type in self.events
