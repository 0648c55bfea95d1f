"""
Base model classes for ChatRelay.

Provides SQLAlchemy declarative base and shared mixins.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class UUIDPrimaryKeyMixin:
    """String UUID primary key, generated client-side."""
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id
    )


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps to models.

    Values are set client-side in UTC with a server-side fallback so rows
    inserted outside the ORM still get timestamps.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )
