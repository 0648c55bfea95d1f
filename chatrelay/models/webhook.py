"""
Webhook subscription and delivery log models.

Webhooks are tenant-configured endpoints; every delivery attempt made to one
is recorded in ``webhook_logs``.
"""
from typing import Any
from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Webhook(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Tenant-owned webhook subscription.

    ``events`` is a flat list of exact event-type strings; there is no
    wildcard matching. Inactive webhooks are never routed to.
    """
    __tablename__ = "webhooks"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)

    def __repr__(self):
        return f"<Webhook(id={self.id}, name={self.name}, active={self.is_active})>"


class WebhookDeliveryLog(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One row per delivery attempt. Written once, never updated."""
    __tablename__ = "webhook_logs"

    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
