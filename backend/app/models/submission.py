"""Form submission model and status state machine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, TimestampMixin


class SubmissionStatus(str, Enum):
    """Lifecycle state of a submission."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    REVISING = "revising"
    COMPLETED = "completed"


# Allowed transitions; driven by the submission API, only observed here.
SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.DRAFT: frozenset({SubmissionStatus.SUBMITTED}),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.COMPLETED, SubmissionStatus.REVISING}),
    SubmissionStatus.REVISING: frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.COMPLETED}),
    SubmissionStatus.COMPLETED: frozenset(),
}


def can_transition(src: SubmissionStatus | str, dst: SubmissionStatus | str) -> bool:
    return SubmissionStatus(dst) in SUBMISSION_TRANSITIONS[SubmissionStatus(src)]


def is_terminal(status: SubmissionStatus | str) -> bool:
    return not SUBMISSION_TRANSITIONS[SubmissionStatus(status)]


class Submission(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "submissions"

    form_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("forms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    form_version_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("form_versions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # Denormalised version number for cheap filtering.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    submitter: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=SubmissionStatus.DRAFT.value,
        doc="draft|submitted|revising|completed",
    )
    confirmation_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("form_id", "confirmation_id", name="uq_submissions_form_confirmation"),
        Index("ix_submissions_export_order", "form_id", "version", "created_at", "id"),
    )
