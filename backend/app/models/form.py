"""Form and form schema snapshot models.

A ``FormVersion`` row is an immutable snapshot of a form's field
definitions. Version numbers are allocated per form and guarded by the
``uq_form_versions_form_version`` constraint; concurrent publishers race on
that constraint and retry (see ``SnapshotService``).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, TimestampMixin, utc_now


class Form(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "forms"

    # Display name; snapshot names are derived from it at publish time.
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Whether reviewers move submissions through the status workflow.
    enable_status_updates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class FormVersion(Base, UUIDMixin):
    """One published version of a form's schema (a snapshot)."""

    __tablename__ = "form_versions"

    form_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("forms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    snapshot_name: Mapped[str] = mapped_column(String(255), nullable=False)
    schema: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("form_id", "version", name="uq_form_versions_form_version"),
        Index("ix_form_versions_form_version_desc", "form_id", "version"),
    )
