"""
Background export execution.

The runner owns one export job from ``queued`` to a terminal phase. Rows are
streamed and encoded straight to a partial file inside the job's directory;
progress goes through an in-process channel to a single status writer task,
which persists it with its own short sessions so pollers see it while the
export is still running.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ExportCancelledError, ExportServiceError
from app.middleware.prometheus import record_export
from app.models.export_job import ExportPhase
from app.schemas.export_job import ExportFilters, ExportMode
from app.services.export_coordinator import encode_submissions
from app.services.export_encoders import MEDIA_TYPES, ExportFormat, export_filename
from app.services.export_job_service import ExportJobService, sha256_file
from app.services.form_version_repository import FormVersionRepository
from app.services.snapshot_service import SnapshotService
from app.services.submission_repository import SubmissionRecord, SubmissionRepository
from app.services.submission_stream import SubmissionStreamReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    rows_processed: int
    phase: Optional[ExportPhase] = None


class ExportJobRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Optional[Settings] = None,
        reader: Optional[SubmissionStreamReader] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self._reader = reader

    def _build_reader(self, job_id: str) -> SubmissionStreamReader:
        if self._reader is not None:
            self._reader.should_cancel = lambda: self._cancel_requested(job_id)
            return self._reader
        cfg = self.settings
        return SubmissionStreamReader(
            SubmissionRepository(self.session_factory),
            batch_size=cfg.EXPORT_BATCH_SIZE,
            retry_attempts=cfg.EXPORT_STORAGE_RETRY_ATTEMPTS,
            retry_backoff_seconds=cfg.EXPORT_STORAGE_RETRY_BACKOFF_SECONDS,
            should_cancel=lambda: self._cancel_requested(job_id),
        )

    async def _cancel_requested(self, job_id: str) -> bool:
        async with self.session_factory() as session:
            return await ExportJobService(session).is_cancel_requested(job_id)

    async def _status_writer(self, job_id: str, channel: asyncio.Queue) -> None:
        """Drain progress updates until the ``None`` sentinel arrives.

        Bursts are coalesced so storage sees at most one write per wake-up.
        """
        done = False
        while not done:
            update = await channel.get()
            if update is None:
                return
            phase = update.phase
            while not channel.empty():
                nxt = channel.get_nowait()
                if nxt is None:
                    done = True
                    break
                update = nxt
                phase = nxt.phase or phase
            try:
                async with self.session_factory() as session:
                    await ExportJobService(session).record_progress(
                        job_id, rows_processed=update.rows_processed, phase=phase
                    )
                    await session.commit()
            except Exception:
                # Progress is advisory; the final transition carries the real count.
                logger.warning("Failed to persist progress for export job %s", job_id, exc_info=True)

    async def run(self, job_id: str) -> str:
        """Execute a queued job and return the phase it ended in."""
        async with self.session_factory() as session:
            jobs = ExportJobService(session)
            job = await jobs.get_job(job_id)
            if job is None:
                logger.warning("Export job not found: %s", job_id)
                return ExportPhase.FAILED.value
            if job.phase != ExportPhase.QUEUED.value:
                logger.info("Export job %s already %s; skipping", job_id, job.phase)
                return job.phase

            snapshots = SnapshotService(FormVersionRepository(session))
            try:
                snapshot = await snapshots.resolve_version(job.form_id, job.version)
            except ExportServiceError as e:
                await jobs.mark_failed(job_id, error_message=e.detail)
                await session.commit()
                record_export(job.format, ExportMode.ASYNCHRONOUS.value, "failed")
                return ExportPhase.FAILED.value
            form = await snapshots.repository.get_form(job.form_id)

            if not await jobs.mark_streaming(job_id):
                await session.rollback()
                logger.info("Export job %s left the queue before starting", job_id)
                return ExportPhase.CANCELLED.value
            await session.commit()

            fmt = ExportFormat.parse(job.format)
            filters = ExportFilters.model_validate(job.filters or {})
            include_metadata = bool(job.include_metadata)
            template = job.template
            form_id, version = str(job.form_id), int(job.version)
            schema_document = snapshot.schema
            file_name = export_filename(form.name if form is not None else snapshot.snapshot_name, fmt)

        return await self._execute(
            job_id,
            form_id=form_id,
            version=version,
            fmt=fmt,
            filters=filters,
            include_metadata=include_metadata,
            template=template,
            schema_document=schema_document,
            file_name=file_name,
        )

    async def _execute(
        self,
        job_id: str,
        *,
        form_id: str,
        version: int,
        fmt: ExportFormat,
        filters: ExportFilters,
        include_metadata: bool,
        template: Optional[str],
        schema_document: dict,
        file_name: str,
    ) -> str:
        flush_every = max(1, int(self.settings.EXPORT_PROGRESS_FLUSH_ROWS))
        channel: asyncio.Queue = asyncio.Queue()
        writer = asyncio.create_task(self._status_writer(job_id, channel))
        rows = 0

        async def counted(records: AsyncIterator[SubmissionRecord]) -> AsyncIterator[SubmissionRecord]:
            nonlocal rows
            async for record in records:
                rows += 1
                if rows % flush_every == 0:
                    channel.put_nowait(ProgressUpdate(rows))
                yield record
            channel.put_nowait(ProgressUpdate(rows, ExportPhase.ENCODING))

        job_dir = ExportJobService.job_dir(job_id=job_id)
        final_path = job_dir / file_name
        partial_path = job_dir / f"{file_name}.partial"

        try:
            job_dir.mkdir(parents=True, exist_ok=True)
            with partial_path.open("wb") as sink:
                result = await encode_submissions(
                    self._build_reader(job_id),
                    form_id=form_id,
                    version=version,
                    schema_document=schema_document,
                    fmt=fmt,
                    filters=filters,
                    include_metadata=include_metadata,
                    sink=sink,
                    records_wrapper=counted,
                    template=template,
                )
        except ExportCancelledError:
            await self._stop_writer(writer, channel)
            return await self._cancelled(job_id, job_dir, fmt, rows)
        except Exception as e:
            await self._stop_writer(writer, channel)
            self._discard(job_dir)
            message = e.detail if isinstance(e, ExportServiceError) else f"{type(e).__name__}: {e}"
            await self._finish(job_id, lambda jobs: jobs.mark_failed(job_id, error_message=message))
            record_export(fmt.value, ExportMode.ASYNCHRONOUS.value, "failed")
            logger.exception("Export job %s failed after %s rows", job_id, rows)
            return ExportPhase.FAILED.value

        await self._stop_writer(writer, channel)
        # Encoding may outlast the stream; a cancel raised meanwhile wins.
        if await self._cancel_requested(job_id):
            return await self._cancelled(job_id, job_dir, fmt, rows)
        partial_path.replace(final_path)

        warnings = [w.to_dict() for w in result.warnings]
        completed = await self._finish(
            job_id,
            lambda jobs: jobs.mark_complete(
                job_id,
                rows_processed=result.rows,
                file_path=str(final_path.as_posix()),
                file_name=file_name,
                media_type=MEDIA_TYPES[fmt],
                file_bytes=final_path.stat().st_size,
                file_sha256=sha256_file(final_path),
                warnings=warnings,
            ),
        )
        if not completed:
            if await self._cancel_requested(job_id):
                return await self._cancelled(job_id, job_dir, fmt, rows)
            # Job row vanished or was finalised by another worker.
            self._discard(job_dir)
            logger.warning("Export job %s could not be marked complete; artifact discarded", job_id)
            return ExportPhase.FAILED.value

        record_export(
            fmt.value,
            ExportMode.ASYNCHRONOUS.value,
            "complete",
            rows=result.rows,
            warnings=len(warnings),
        )
        logger.info("Export job %s complete: %s rows, %s warnings", job_id, result.rows, len(warnings))
        return ExportPhase.COMPLETE.value

    async def _cancelled(self, job_id: str, job_dir: Path, fmt: ExportFormat, rows: int) -> str:
        self._discard(job_dir)
        await self._finish(job_id, lambda jobs: jobs.mark_cancelled(job_id))
        record_export(fmt.value, ExportMode.ASYNCHRONOUS.value, "cancelled")
        logger.info("Export job %s cancelled after %s rows", job_id, rows)
        return ExportPhase.CANCELLED.value

    async def _finish(self, job_id: str, apply) -> bool:
        async with self.session_factory() as session:
            ok = await apply(ExportJobService(session))
            await session.commit()
            return ok

    @staticmethod
    async def _stop_writer(writer: asyncio.Task, channel: asyncio.Queue) -> None:
        channel.put_nowait(None)
        await writer

    @staticmethod
    def _discard(job_dir: Path) -> None:
        shutil.rmtree(job_dir, ignore_errors=True)
