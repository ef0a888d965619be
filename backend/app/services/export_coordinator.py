"""
Export Request Coordinator
==========================

Entry point for submission exports. Resolves the form version, estimates the
result size and either encodes inline (synchronous) or hands the work to a
background job (asynchronous).

Synchronous exports are bounded twice: by row count up front (estimates over
``EXPORT_SYNC_ROW_THRESHOLD`` are always run asynchronously, even when the
caller asked for synchronous) and by wall-clock time while running.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.celery_app import EXPORT_TASK, celery_app
from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ExportTimeoutError, StorageError
from app.middleware.prometheus import record_export
from app.models.export_job import ExportJob
from app.schemas.export_job import ExportFilters, ExportMode
from app.services.export_encoders import (
    EncodeResult,
    EncodingWarning,
    CsvTemplate,
    ExportFormat,
    encoder_for,
    export_filename,
)
from app.services.export_job_service import ExportJobService
from app.services.form_schema import field_paths, parse_schema
from app.services.form_version_repository import FormVersionRepository
from app.services.snapshot_service import LATEST, SnapshotService
from app.services.submission_repository import SubmissionRepository
from app.services.submission_stream import SubmissionStreamReader

logger = logging.getLogger(__name__)

EXPORT_TASK_NAME = EXPORT_TASK


def enqueue_export_job(job_id: str, request_id: Optional[str] = None) -> None:
    celery_app.send_task(EXPORT_TASK_NAME, kwargs={"job_id": job_id, "request_id": request_id})


@dataclass
class ExportContext:
    """Per-request collaborators for the coordinator."""

    requester_id: str
    session: AsyncSession
    session_factory: async_sessionmaker[AsyncSession]
    request_id: Optional[str] = None
    settings: Settings = field(default_factory=lambda: default_settings)
    enqueue: Callable[[str, Optional[str]], Any] = enqueue_export_job


@dataclass(frozen=True)
class EncodedExport:
    content: bytes
    filename: str
    media_type: str
    rows: int
    warnings: list[EncodingWarning]


def choose_mode(requested: Optional[ExportMode], estimate: int, threshold: int) -> ExportMode:
    """Pick the execution mode; large exports never run inline."""
    if estimate > threshold:
        return ExportMode.ASYNCHRONOUS
    return requested or ExportMode.SYNCHRONOUS


def schema_columns(
    schema_document: dict[str, Any],
    fields: Optional[Sequence[str]] = None,
    *,
    grid_children: bool = False,
) -> list[str]:
    """Column seed from the snapshot, optionally limited to top-level ``fields``."""
    paths = field_paths(parse_schema(schema_document), grid_children=grid_children)
    if not fields:
        return paths
    wanted = set(fields)
    return [p for p in paths if p.split(".", 1)[0] in wanted]


async def encode_submissions(
    reader: SubmissionStreamReader,
    *,
    form_id: str,
    version: int,
    schema_document: dict[str, Any],
    fmt: ExportFormat,
    filters: ExportFilters,
    include_metadata: bool,
    sink: BinaryIO,
    records_wrapper: Optional[Callable] = None,
    template: CsvTemplate | str | None = None,
) -> EncodeResult:
    """Stream matching submissions through the format's encoder into ``sink``."""
    template = CsvTemplate.parse(template)
    encoder = encoder_for(
        fmt,
        columns=schema_columns(schema_document, filters.fields, grid_children=template.unwinds),
        include_metadata=include_metadata,
        template=template,
    )
    records = reader.stream(form_id, version, filters)
    if records_wrapper is not None:
        records = records_wrapper(records)
    return await encoder.encode(records, sink)


class ExportCoordinator:
    def __init__(
        self,
        context: ExportContext,
        *,
        snapshots: Optional[SnapshotService] = None,
        reader: Optional[SubmissionStreamReader] = None,
    ):
        self.context = context
        self.snapshots = snapshots or SnapshotService(FormVersionRepository(context.session))
        cfg = context.settings
        self.reader = reader or SubmissionStreamReader(
            SubmissionRepository(context.session_factory),
            batch_size=cfg.EXPORT_BATCH_SIZE,
            retry_attempts=cfg.EXPORT_STORAGE_RETRY_ATTEMPTS,
            retry_backoff_seconds=cfg.EXPORT_STORAGE_RETRY_BACKOFF_SECONDS,
        )

    async def request_export(
        self,
        form_id: str,
        version_selector: Union[str, int, None] = LATEST,
        format: Union[ExportFormat, str] = ExportFormat.CSV,
        filters: Optional[ExportFilters] = None,
        mode: Optional[ExportMode] = None,
        include_metadata: bool = False,
        template: CsvTemplate | str | None = None,
    ) -> Union[EncodedExport, ExportJob]:
        """
        Run or schedule an export.

        Returns:
            EncodedExport for synchronous exports, or the queued ExportJob

        Raises:
            UnsupportedFormatError: unknown format (checked before any I/O)
            ValidationError: malformed version selector or unknown template
            NotFoundError: unknown form or version
            ExportTimeoutError: synchronous export exceeded its time limit
            StorageError: submission reads kept failing
        """
        fmt = ExportFormat.parse(format)
        template = CsvTemplate.parse(template)
        filters = filters or ExportFilters()
        cfg = self.context.settings

        snapshot = await self.snapshots.resolve_version(form_id, version_selector)
        form = await self.snapshots.repository.get_form(form_id)

        estimate = await self.reader.count(form_id, snapshot.version, filters)
        chosen = choose_mode(mode, estimate, cfg.EXPORT_SYNC_ROW_THRESHOLD)
        if chosen != (mode or ExportMode.SYNCHRONOUS):
            logger.info(
                "Export of form %s v%s escalated to %s (estimate %s > %s)",
                form_id,
                snapshot.version,
                chosen.value,
                estimate,
                cfg.EXPORT_SYNC_ROW_THRESHOLD,
            )

        if chosen == ExportMode.ASYNCHRONOUS:
            return await self._schedule(form_id, snapshot.version, fmt, filters, include_metadata, template, estimate)

        filename = export_filename(form.name if form is not None else snapshot.snapshot_name, fmt)
        buffer = io.BytesIO()
        try:
            result = await asyncio.wait_for(
                encode_submissions(
                    self.reader,
                    form_id=form_id,
                    version=snapshot.version,
                    schema_document=snapshot.schema,
                    fmt=fmt,
                    filters=filters,
                    include_metadata=include_metadata,
                    sink=buffer,
                    template=template,
                ),
                timeout=cfg.EXPORT_SYNC_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            record_export(fmt.value, ExportMode.SYNCHRONOUS.value, "timeout")
            raise ExportTimeoutError(
                f"Synchronous export exceeded {cfg.EXPORT_SYNC_TIMEOUT_SECONDS}s; request an asynchronous export"
            ) from None
        except Exception:
            record_export(fmt.value, ExportMode.SYNCHRONOUS.value, "failed")
            raise

        record_export(
            fmt.value,
            ExportMode.SYNCHRONOUS.value,
            "complete",
            rows=result.rows,
            warnings=len(result.warnings),
        )
        logger.info(
            "Synchronous %s export of form %s v%s: %s rows, %s warnings",
            fmt.value,
            form_id,
            snapshot.version,
            result.rows,
            len(result.warnings),
        )
        return EncodedExport(
            content=buffer.getvalue(),
            filename=filename,
            media_type=encoder_for(fmt).media_type,
            rows=result.rows,
            warnings=result.warnings,
        )

    async def _schedule(
        self,
        form_id: str,
        version: int,
        fmt: ExportFormat,
        filters: ExportFilters,
        include_metadata: bool,
        template: CsvTemplate,
        estimate: int,
    ) -> ExportJob:
        session = self.context.session
        job = await ExportJobService(session).create_job(
            requester_id=self.context.requester_id,
            form_id=form_id,
            version=version,
            format=fmt.value,
            filters=filters.model_dump(mode="json", exclude_none=True),
            total_estimate=estimate,
            include_metadata=include_metadata,
            template=template.value,
        )
        # The worker must be able to read the job before it is enqueued.
        await session.commit()

        try:
            self.context.enqueue(str(job.id), self.context.request_id)
        except Exception as e:
            # Without a task the job would sit in the queue forever.
            jobs = ExportJobService(session)
            await jobs.mark_failed(str(job.id), error_message=f"Could not enqueue export: {type(e).__name__}: {e}")
            await session.commit()
            record_export(fmt.value, ExportMode.ASYNCHRONOUS.value, "failed")
            logger.exception("Failed to enqueue export job %s", job.id)
            raise StorageError("Export queue unavailable; try again later") from e
        logger.info("Queued %s export job %s for form %s v%s (estimate %s)", fmt.value, job.id, form_id, version, estimate)
        return job
