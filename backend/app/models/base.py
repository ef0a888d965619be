"""
Model Base
==========

Declarative base plus the id/timestamp columns shared by forms,
submissions and export jobs.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_uuid(value: object) -> str | None:
    """Canonical form of a caller-supplied id, or None when it is not a UUID."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class UUIDMixin:
    """String-typed UUID primary key (``as_uuid=False`` keeps ids JSON friendly)."""

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=generate_uuid,
    )


class TimestampMixin:
    """
    created_at / updated_at in UTC.

    Submission export order keys on ``created_at``, so it is set client-side
    on insert (``default``) with the server default only as a fallback.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        nullable=False,
    )
