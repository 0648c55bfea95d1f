"""
Conversation and message models.

Only the delivery-relevant subset of the CRM's messaging schema lives here.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import enum
from typing import Any
from sqlalchemy import Boolean, ForeignKey, JSON, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from chatrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class MessageStatus(str, enum.Enum):
    """Message delivery status."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Conversation(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A conversation between a tenant's messaging session and one contact."""
    __tablename__ = "conversations"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    messages = relationship("Message", back_populates="conversation")

    def __repr__(self):
        return f"<Conversation(id={self.id}, tenant_id={self.tenant_id})>"


class Message(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    A message exchanged in a conversation.

    ``status`` and ``meta`` are mutated only by the delivery status tracker
    and the send/resend path. ``meta`` is stored in the ``metadata`` column
    and holds ``retryCount``, the last ``error`` and ``retriesExhausted``.
    """
    __tablename__ = "messages"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_from_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[MessageStatus] = mapped_column(
        SQLEnum(MessageStatus, native_enum=False, length=9,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=MessageStatus.PENDING,
        index=True
    )
    provider_message_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    conversation = relationship("Conversation", back_populates="messages")

    @property
    def retry_count(self) -> int:
        return int((self.meta or {}).get("retryCount", 0))

    def __repr__(self):
        return f"<Message(id={self.id}, status={self.status})>"


class MessageStatusEvent(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Append-only record of each status a message moved into."""
    __tablename__ = "message_status_events"

    message_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[MessageStatus] = mapped_column(
        SQLEnum(MessageStatus, native_enum=False, length=9,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
