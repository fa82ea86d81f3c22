"""
Base model classes for CreditLedger.

Provides SQLAlchemy declarative base and shared mixins.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class CreatedAtMixin:
    """
    Mixin for append-only tables.

    Rows are written once, so only a creation timestamp is tracked. The
    Python-side default keeps the value available without a refresh.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False
    )


class TimestampMixin(CreatedAtMixin):
    """
    Mixin that adds created_at and updated_at timestamps to models.

    Used by tables that allow narrow, tracked mutations after creation.
    """
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False
    )
