"""In-memory stand-ins for the storage layer used across the unit tests."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock

from app.core.exceptions import StorageError
from app.models.export_job import ExportPhase, TERMINAL_PHASES, can_advance
from app.schemas.export_job import ExportFilters
from app.services.export_job_service import ExportJobService
from app.services.form_version_repository import VersionConflict
from app.services.submission_repository import SubmissionRecord, project_data


BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeSession:
    def __init__(self):
        self.commit = AsyncMock()
        self.rollback = AsyncMock()
        self.flush = AsyncMock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSessionFactory:
    def __init__(self):
        self.sessions: list[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session


# ---------------------------------------------------------------------------
# Forms and snapshots
# ---------------------------------------------------------------------------


@dataclass
class FakeForm:
    id: str
    name: str
    description: Optional[str] = None
    active: bool = True
    enable_status_updates: bool = False
    created_by: Optional[str] = None
    created_at: datetime = BASE_TIME
    updated_at: datetime = BASE_TIME


@dataclass
class FakeFormVersion:
    id: str
    form_id: str
    version: int
    snapshot_name: str
    schema: dict[str, Any]
    created_by: Optional[str] = None
    created_at: datetime = BASE_TIME


class InMemoryFormVersionRepository:
    """Mimics the unique (form_id, version) constraint of the real table."""

    def __init__(self, *, yield_between_read_and_insert: bool = False, always_conflict: bool = False):
        self.session = FakeSession()
        self.forms: dict[str, FakeForm] = {}
        self.versions: list[FakeFormVersion] = []
        self.yield_between_read_and_insert = yield_between_read_and_insert
        self.always_conflict = always_conflict
        self.insert_attempts = 0

    def add_form(self, name: str = "Intake Form", form_id: Optional[str] = None) -> FakeForm:
        form = FakeForm(id=form_id or str(uuid.uuid4()), name=name)
        self.forms[form.id] = form
        return form

    def add_version(self, form_id: str, version: int, schema: dict[str, Any], snapshot_name: str = "intake_form"):
        row = FakeFormVersion(
            id=str(uuid.uuid4()),
            form_id=form_id,
            version=version,
            snapshot_name=snapshot_name,
            schema=schema,
        )
        self.versions.append(row)
        return row

    async def get_form(self, form_id: str):
        return self.forms.get(form_id)

    async def create_form(self, *, name, description=None, enable_status_updates=False, created_by=None):
        form = self.add_form(name)
        form.description = description
        form.enable_status_updates = enable_status_updates
        form.created_by = created_by
        return form

    async def max_version(self, form_id: str) -> int:
        current = max((v.version for v in self.versions if v.form_id == form_id), default=0)
        if self.yield_between_read_and_insert:
            # Let a competing publisher read the same maximum.
            await asyncio.sleep(0)
        return current

    async def insert_version(self, *, form_id, version, schema, snapshot_name, created_by):
        self.insert_attempts += 1
        taken = any(v.form_id == form_id and v.version == version for v in self.versions)
        if taken or self.always_conflict:
            raise VersionConflict(f"version {version} already claimed for form {form_id}")
        row = FakeFormVersion(
            id=str(uuid.uuid4()),
            form_id=form_id,
            version=version,
            snapshot_name=snapshot_name,
            schema=schema,
            created_by=created_by,
        )
        self.versions.append(row)
        return row

    async def get_version(self, form_id: str, version: int):
        return next((v for v in self.versions if v.form_id == form_id and v.version == version), None)

    async def latest_version(self, form_id: str):
        rows = [v for v in self.versions if v.form_id == form_id]
        return max(rows, key=lambda v: v.version) if rows else None

    async def list_versions(self, form_id: str):
        return sorted((v for v in self.versions if v.form_id == form_id), key=lambda v: v.version)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


@dataclass
class _StoredSubmission:
    record: SubmissionRecord
    deleted: bool = False


class InMemorySubmissionSource:
    """Keyset-paginated submission reads with optional injected failures."""

    def __init__(self):
        self.rows: list[_StoredSubmission] = []
        self.fetch_calls: list[dict[str, Any]] = []
        self.failures_remaining = 0
        self.on_fetch = None

    def add(
        self,
        data: dict[str, Any],
        *,
        form_id: str = "form-1",
        version: int = 1,
        status: str = "submitted",
        created_at: Optional[datetime] = None,
        deleted: bool = False,
        submitter: str = "alice",
        confirmation_id: Optional[str] = None,
    ) -> SubmissionRecord:
        n = len(self.rows)
        record = SubmissionRecord(
            id=f"s{n:05d}",
            form_id=form_id,
            version=version,
            status=status,
            created_at=created_at or BASE_TIME + timedelta(seconds=n),
            data=data,
            submitter=submitter,
            confirmation_id=confirmation_id or f"C{n:07d}",
        )
        self.rows.append(_StoredSubmission(record=record, deleted=deleted))
        return record

    def _matching(self, form_id: str, version: int, filters: ExportFilters) -> list[SubmissionRecord]:
        statuses = set(filters.effective_statuses())
        out = []
        for stored in self.rows:
            r = stored.record
            if r.form_id != form_id or r.version != version or r.status not in statuses:
                continue
            if stored.deleted and not filters.include_deleted:
                continue
            if filters.min_date is not None and r.created_at < filters.min_date:
                continue
            if filters.max_date is not None and r.created_at > filters.max_date:
                continue
            out.append(r)
        return sorted(out, key=lambda r: (r.created_at, r.id))

    async def fetch_batch(self, form_id, version, filters, *, after, limit):
        self.fetch_calls.append({"after": after, "limit": limit})
        if self.on_fetch is not None:
            await self.on_fetch(len(self.fetch_calls))
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise StorageError("connection reset")
        rows = self._matching(form_id, version, filters)
        if after is not None:
            rows = [r for r in rows if (r.created_at, r.id) > after]
        batch = rows[:limit]
        return [
            SubmissionRecord(
                id=r.id,
                form_id=r.form_id,
                version=r.version,
                status=r.status,
                created_at=r.created_at,
                data=project_data(r.data, filters.fields),
                submitter=r.submitter,
                confirmation_id=r.confirmation_id,
            )
            for r in batch
        ]

    async def count(self, form_id, version, filters) -> int:
        return len(self._matching(form_id, version, filters))


# ---------------------------------------------------------------------------
# Export jobs
# ---------------------------------------------------------------------------


@dataclass
class InMemoryJobStore:
    jobs: dict[str, SimpleNamespace] = field(default_factory=dict)
    progress_writes: list[tuple[int, Optional[str]]] = field(default_factory=list)

    def add_job(self, **overrides) -> SimpleNamespace:
        job = SimpleNamespace(
            id=overrides.pop("id", str(uuid.uuid4())),
            requester_id="user-1",
            form_id="form-1",
            version=1,
            format="csv",
            filters={},
            include_metadata=False,
            template=None,
            phase=ExportPhase.QUEUED.value,
            rows_processed=0,
            total_estimate=0,
            cancel_requested=False,
            file_path=None,
            file_name=None,
            media_type=None,
            file_bytes=None,
            file_sha256=None,
            warnings=[],
            started_at=None,
            finished_at=None,
            expires_at=None,
            retrieved_at=None,
            error_message=None,
            created_at=BASE_TIME,
            updated_at=BASE_TIME,
        )
        for key, value in overrides.items():
            setattr(job, key, value)
        self.jobs[job.id] = job
        return job

    def service_class(self) -> type:
        store = self

        class StoreBackedExportJobService(ExportJobService):
            async def get_job(self, job_id, *, requester_id=None):
                job = store.jobs.get(job_id)
                if job is None or (requester_id is not None and job.requester_id != requester_id):
                    return None
                return job

            async def transition(self, job_id, *, from_phases, to_phase, unless_cancel_requested=False, **values):
                job = store.jobs.get(job_id)
                allowed = [ExportPhase(p).value for p in from_phases]
                if job is None or job.phase not in allowed or not can_advance(job.phase, to_phase):
                    return False
                if unless_cancel_requested and job.cancel_requested:
                    return False
                job.phase = to_phase.value
                for key, value in values.items():
                    setattr(job, key, value)
                return True

            async def record_progress(self, job_id, *, rows_processed, phase=None):
                job = store.jobs[job_id]
                store.progress_writes.append((rows_processed, phase.value if phase else None))
                if job.phase in (ExportPhase.STREAMING.value, ExportPhase.ENCODING.value):
                    job.rows_processed = rows_processed
                    if phase is not None:
                        job.phase = phase.value

            async def flag_cancel(self, job_id):
                job = store.jobs.get(job_id)
                if job is None or job.phase in {p.value for p in TERMINAL_PHASES}:
                    return False
                job.cancel_requested = True
                return True

            async def current_phase(self, job_id):
                job = store.jobs.get(job_id)
                return job.phase if job is not None else None

            async def is_cancel_requested(self, job_id):
                job = store.jobs.get(job_id)
                return job is None or job.cancel_requested or job.phase == ExportPhase.CANCELLED.value

            async def mark_retrieved(self, job):
                if job.retrieved_at is None:
                    job.retrieved_at = datetime.now(timezone.utc)

            async def list_jobs(self, *, requester_id, page, page_size):
                rows = [j for j in store.jobs.values() if j.requester_id == requester_id]
                return rows[(page - 1) * page_size : page * page_size], len(rows)

            async def collectable_jobs(self, *, now, policy, limit):
                terminal = {p.value for p in TERMINAL_PHASES}
                return [j for j in store.jobs.values() if j.phase in terminal][:limit]

            async def delete_job(self, job):
                store.jobs.pop(job.id, None)

        return StoreBackedExportJobService
