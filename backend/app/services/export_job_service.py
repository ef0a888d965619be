from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ExportCancelledError,
    ExportExpiredError,
    ExportFailedError,
    ExportNotReadyError,
    NotFoundError,
)
from app.models.base import parse_uuid
from app.models.export_job import (
    ExportJob,
    ExportPhase,
    TERMINAL_PHASES,
    can_advance,
    is_terminal_phase,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ExportJobStatus:
    job_id: str
    phase: str
    rows_processed: int
    total_estimate: int
    progress: Optional[float]
    error_message: Optional[str] = None
    warnings: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CancelResult:
    job_id: str
    cancelled: bool
    phase: str


def progress_ratio(phase: str, rows_processed: int, total_estimate: int) -> Optional[float]:
    """Rows processed over the start-of-job estimate.

    The estimate is never recomputed, so this may exceed 1.0 when
    submissions arrive mid-export.
    """
    if total_estimate > 0:
        return rows_processed / total_estimate
    if phase == ExportPhase.COMPLETE.value:
        return 1.0
    return None


class ExportJobService:
    """Export job persistence plus the read side used by status pollers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def export_base_dir() -> Path:
        base = getattr(settings, "EXPORT_DIR", None) or "exports/submissions"
        return Path(str(base))

    @classmethod
    def job_dir(cls, *, job_id: str) -> Path:
        return cls.export_base_dir() / job_id

    @classmethod
    def job_file_path(cls, *, job_id: str, file_name: str) -> Path:
        return cls.job_dir(job_id=job_id) / file_name

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_job(
        self,
        *,
        requester_id: str,
        form_id: str,
        version: int,
        format: str,
        filters: dict[str, Any],
        total_estimate: int,
        include_metadata: bool = False,
        template: Optional[str] = None,
    ) -> ExportJob:
        job = ExportJob(
            requester_id=requester_id,
            form_id=form_id,
            version=version,
            format=format,
            filters=filters,
            include_metadata=include_metadata,
            template=template,
            phase=ExportPhase.QUEUED.value,
            rows_processed=0,
            total_estimate=int(total_estimate),
            cancel_requested=False,
            warnings=[],
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def transition(
        self,
        job_id: str,
        *,
        from_phases: Iterable[ExportPhase],
        to_phase: ExportPhase,
        unless_cancel_requested: bool = False,
        **values: Any,
    ) -> bool:
        """Atomically move a job forward if it is still in one of ``from_phases``.

        With ``unless_cancel_requested`` the move also requires that nobody
        asked to cancel the job. Returns False when another writer (e.g. a
        cancel) got there first.
        """
        allowed = [ExportPhase(p).value for p in from_phases]
        if not all(can_advance(p, to_phase) for p in allowed):
            raise ValueError(f"Illegal export phase transition {allowed} -> {to_phase.value}")
        conditions = [ExportJob.id == job_id, ExportJob.phase.in_(allowed)]
        if unless_cancel_requested:
            conditions.append(ExportJob.cancel_requested.is_(False))
        stmt = (
            update(ExportJob)
            .where(*conditions)
            .values(phase=to_phase.value, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return bool(res.rowcount)

    async def record_progress(self, job_id: str, *, rows_processed: int, phase: Optional[ExportPhase] = None) -> None:
        """Persist a progress snapshot; ignored once the job left the running phases."""
        values: dict[str, Any] = {"rows_processed": int(rows_processed)}
        if phase is not None:
            values["phase"] = phase.value
        active = [ExportPhase.STREAMING.value, ExportPhase.ENCODING.value]
        stmt = (
            update(ExportJob)
            .where(ExportJob.id == job_id, ExportJob.phase.in_(active))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def mark_streaming(self, job_id: str) -> bool:
        return await self.transition(
            job_id,
            from_phases=[ExportPhase.QUEUED],
            to_phase=ExportPhase.STREAMING,
            started_at=_utcnow(),
            error_message=None,
        )

    async def mark_complete(
        self,
        job_id: str,
        *,
        rows_processed: int,
        file_path: str,
        file_name: str,
        media_type: str,
        file_bytes: int,
        file_sha256: str,
        warnings: list[dict[str, Any]],
    ) -> bool:
        now = _utcnow()
        return await self.transition(
            job_id,
            from_phases=[ExportPhase.STREAMING, ExportPhase.ENCODING],
            to_phase=ExportPhase.COMPLETE,
            unless_cancel_requested=True,
            rows_processed=int(rows_processed),
            file_path=file_path,
            file_name=file_name,
            media_type=media_type,
            file_bytes=int(file_bytes),
            file_sha256=file_sha256,
            warnings=warnings,
            finished_at=now,
            expires_at=now + timedelta(seconds=int(settings.EXPORT_RETENTION_SECONDS)),
            error_message=None,
        )

    async def mark_failed(self, job_id: str, *, error_message: str) -> bool:
        now = _utcnow()
        return await self.transition(
            job_id,
            from_phases=[ExportPhase.QUEUED, ExportPhase.STREAMING, ExportPhase.ENCODING],
            to_phase=ExportPhase.FAILED,
            finished_at=now,
            expires_at=now + timedelta(seconds=int(settings.EXPORT_RETENTION_SECONDS)),
            error_message=(error_message or "").strip()[:2000] or "failed",
        )

    async def mark_cancelled(self, job_id: str) -> bool:
        now = _utcnow()
        return await self.transition(
            job_id,
            from_phases=[ExportPhase.QUEUED, ExportPhase.STREAMING, ExportPhase.ENCODING],
            to_phase=ExportPhase.CANCELLED,
            finished_at=now,
            expires_at=now + timedelta(seconds=int(settings.EXPORT_RETENTION_SECONDS)),
            error_message="Export cancelled",
        )

    async def flag_cancel(self, job_id: str) -> bool:
        """Ask a running job to stop; no-op once it is terminal."""
        stmt = (
            update(ExportJob)
            .where(ExportJob.id == job_id, ExportJob.phase.notin_([p.value for p in TERMINAL_PHASES]))
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return bool(res.rowcount)

    async def mark_retrieved(self, job: ExportJob) -> None:
        if job.retrieved_at is None:
            job.retrieved_at = _utcnow()
            await self.session.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str, *, requester_id: Optional[str] = None) -> ExportJob | None:
        job_id = parse_uuid(job_id)
        if job_id is None:
            return None
        stmt = select(ExportJob).where(ExportJob.id == job_id)
        if requester_id is not None:
            stmt = stmt.where(ExportJob.requester_id == requester_id)
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def require_job(self, job_id: str, *, requester_id: str) -> ExportJob:
        job = await self.get_job(job_id, requester_id=requester_id)
        if job is None:
            raise NotFoundError("Export job not found")
        return job

    async def current_phase(self, job_id: str) -> Optional[str]:
        stmt = select(ExportJob.phase).where(ExportJob.id == job_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def is_cancel_requested(self, job_id: str) -> bool:
        stmt = select(ExportJob.cancel_requested, ExportJob.phase).where(ExportJob.id == job_id)
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return True
        cancel_requested, phase = row
        return bool(cancel_requested) or phase == ExportPhase.CANCELLED.value

    async def list_jobs(self, *, requester_id: str, page: int, page_size: int) -> tuple[list[ExportJob], int]:
        total = int(
            (
                await self.session.execute(
                    select(func.count()).select_from(ExportJob).where(ExportJob.requester_id == requester_id)
                )
            ).scalar()
            or 0
        )
        stmt = (
            select(ExportJob)
            .where(ExportJob.requester_id == requester_id)
            .order_by(desc(ExportJob.created_at))
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = list((await self.session.execute(stmt)).scalars().all())
        return rows, total

    async def collectable_jobs(self, *, now: datetime, policy: str, limit: int) -> list[ExportJob]:
        """Terminal jobs the GC policy allows deleting, oldest first."""
        terminal = [p.value for p in TERMINAL_PHASES]
        expired = and_(ExportJob.expires_at.is_not(None), ExportJob.expires_at < now)
        condition = expired
        if policy == "first_retrieval":
            retrieved = and_(
                ExportJob.phase == ExportPhase.COMPLETE.value,
                ExportJob.retrieved_at.is_not(None),
            )
            condition = or_(expired, retrieved)
        stmt = (
            select(ExportJob)
            .where(ExportJob.phase.in_(terminal), condition)
            .order_by(ExportJob.finished_at.asc())
            .limit(int(limit))
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def delete_job(self, job: ExportJob) -> None:
        await self.session.delete(job)

    # ------------------------------------------------------------------
    # Poller operations
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str, *, requester_id: str) -> ExportJobStatus:
        job = await self.require_job(job_id, requester_id=requester_id)
        rows = int(job.rows_processed or 0)
        total = int(job.total_estimate or 0)
        return ExportJobStatus(
            job_id=str(job.id),
            phase=job.phase,
            rows_processed=rows,
            total_estimate=total,
            progress=progress_ratio(job.phase, rows, total),
            error_message=job.error_message,
            warnings=list(job.warnings or []),
        )

    async def cancel(self, job_id: str, *, requester_id: str) -> CancelResult:
        """Request cooperative cancellation.

        Queued jobs are cancelled immediately; running jobs are flagged and
        stop after their in-flight batch; terminal jobs are left alone.
        """
        job = await self.require_job(job_id, requester_id=requester_id)

        if is_terminal_phase(job.phase):
            return CancelResult(job_id=str(job.id), cancelled=False, phase=job.phase)

        now = _utcnow()
        if job.phase == ExportPhase.QUEUED.value and await self.transition(
            str(job.id),
            from_phases=[ExportPhase.QUEUED],
            to_phase=ExportPhase.CANCELLED,
            cancel_requested=True,
            finished_at=now,
            expires_at=now + timedelta(seconds=int(settings.EXPORT_RETENTION_SECONDS)),
            error_message="Export cancelled",
        ):
            logger.info("Cancelled queued export job %s", job.id)
            return CancelResult(job_id=str(job.id), cancelled=True, phase=ExportPhase.CANCELLED.value)

        if not await self.flag_cancel(str(job.id)):
            # Finished between the read and the update.
            return CancelResult(job_id=str(job.id), cancelled=False, phase=await self.current_phase(str(job.id)))

        logger.info("Cancellation requested for export job %s", job.id)
        return CancelResult(job_id=str(job.id), cancelled=True, phase=job.phase)

    async def get_result(self, job_id: str, *, requester_id: str) -> ExportJob:
        """Return a completed job whose artifact is still on disk.

        Never exposes partial output: failed and cancelled jobs raise.
        """
        job = await self.require_job(job_id, requester_id=requester_id)

        if job.phase == ExportPhase.FAILED.value:
            raise ExportFailedError(job.error_message or "Export failed")
        if job.phase == ExportPhase.CANCELLED.value:
            raise ExportCancelledError("Export was cancelled")
        if job.phase != ExportPhase.COMPLETE.value:
            raise ExportNotReadyError(f"Export is not ready (phase: {job.phase})")

        if job.expires_at is not None and _aware(job.expires_at) < _utcnow():
            raise ExportExpiredError("Export has expired")

        if not job.file_path or not Path(job.file_path).is_file():
            raise NotFoundError("Export artifact missing")

        return job


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def is_collectable(job: ExportJob, *, now: datetime, policy: str) -> bool:
    """Whether the GC policy allows deleting ``job`` and its artifact."""
    if not is_terminal_phase(job.phase):
        return False
    if job.expires_at is not None and _aware(job.expires_at) < now:
        return True
    return policy == "first_retrieval" and job.phase == ExportPhase.COMPLETE.value and job.retrieved_at is not None
