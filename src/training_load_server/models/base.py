"""Base database model and shared column mixins."""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base model for all database tables."""

    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class UserScopedMixin:
    """Mixin for athlete-scoped data.

    Every table carries the athlete it belongs to; matching, aggregation,
    PMC recompute and calibration never look across athletes.
    """

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Athlete identifier supplied by the calling application",
    )


def generate_uuid() -> str:
    """Generate a UUID for primary keys."""
    return str(uuid4())
