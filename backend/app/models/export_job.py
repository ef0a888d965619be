"""Export job model.

Tracks asynchronous submission exports that write artifacts to disk.

Ownership:
- every job belongs to exactly one requester (``requester_id``)
- status/result/cancel lookups are always scoped by requester
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDMixin, TimestampMixin


class ExportPhase(str, Enum):
    QUEUED = "queued"
    STREAMING = "streaming"
    ENCODING = "encoding"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({ExportPhase.COMPLETE, ExportPhase.FAILED, ExportPhase.CANCELLED})

_PHASE_RANK = {
    ExportPhase.QUEUED: 0,
    ExportPhase.STREAMING: 1,
    ExportPhase.ENCODING: 2,
    ExportPhase.COMPLETE: 3,
    ExportPhase.FAILED: 3,
    ExportPhase.CANCELLED: 3,
}


def is_terminal_phase(phase: ExportPhase | str) -> bool:
    return ExportPhase(phase) in TERMINAL_PHASES


def can_advance(src: ExportPhase | str, dst: ExportPhase | str) -> bool:
    """Phases only move forward; terminal phases never change."""
    src, dst = ExportPhase(src), ExportPhase(dst)
    if src in TERMINAL_PHASES:
        return False
    return _PHASE_RANK[dst] > _PHASE_RANK[src]


class ExportJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "export_jobs"

    requester_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Request
    form_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False)
    filters: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    include_metadata: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Tabular row layout (unflattened, flattenedWithBlankOut, flattenedWithFilled).
    template: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Progress
    phase: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ExportPhase.QUEUED.value,
        doc="queued|streaming|encoding|complete|failed|cancelled",
    )
    rows_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_estimate: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Output
    file_path: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    media_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    warnings: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    retrieved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Error handling
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    __table_args__ = (
        Index("ix_export_jobs_requester_phase", "requester_id", "phase"),
    )
