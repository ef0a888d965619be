from __future__ import annotations

import asyncio
import csv
import io
from types import SimpleNamespace

import pytest

from app.core.config import settings
from app.core.exceptions import (
    ExportTimeoutError,
    NotFoundError,
    StorageError,
    UnsupportedFormatError,
    ValidationError,
)
from app.schemas.export_job import ExportFilters, ExportMode
from app.services.export_coordinator import (
    EncodedExport,
    ExportContext,
    ExportCoordinator,
    choose_mode,
    schema_columns,
)
from app.services.export_job_service import ExportJobService
from app.services.snapshot_service import SnapshotService
from app.services.submission_stream import SubmissionStreamReader

from tests.fakes import FakeSession, FakeSessionFactory


SCHEMA = {
    "components": [
        {"type": "textfield", "key": "name", "input": True},
        {"type": "email", "key": "email", "input": True},
        {
            "type": "container",
            "key": "address",
            "input": True,
            "components": [{"type": "textfield", "key": "city", "input": True}],
        },
    ]
}


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
def make_coordinator(form_repo, submission_source, enqueued):
    form_repo.add_form("Intake Form", form_id="form-1")
    form_repo.add_version("form-1", 1, SCHEMA)

    def _make(**overrides):
        cfg = settings.model_copy(update=overrides)
        context = ExportContext(
            requester_id="user-1",
            session=FakeSession(),
            session_factory=FakeSessionFactory(),
            request_id="req-123",
            settings=cfg,
            enqueue=lambda job_id, request_id: enqueued.append((job_id, request_id)),
        )
        reader = SubmissionStreamReader(submission_source, batch_size=2, retry_backoff_seconds=0)
        return ExportCoordinator(context, snapshots=SnapshotService(form_repo), reader=reader)

    return _make


@pytest.fixture
def created_jobs(monkeypatch):
    created = []

    async def _create_job(self, **kwargs):
        job = SimpleNamespace(id=f"job-{len(created) + 1}", phase="queued", **kwargs)
        created.append(job)
        return job

    monkeypatch.setattr(ExportJobService, "create_job", _create_job)
    return created


@pytest.mark.parametrize(
    "requested, estimate, expected",
    [
        (None, 10, ExportMode.SYNCHRONOUS),
        (ExportMode.SYNCHRONOUS, 100, ExportMode.SYNCHRONOUS),
        (ExportMode.ASYNCHRONOUS, 1, ExportMode.ASYNCHRONOUS),
        (ExportMode.SYNCHRONOUS, 101, ExportMode.ASYNCHRONOUS),
        (None, 101, ExportMode.ASYNCHRONOUS),
    ],
)
def test_choose_mode(requested, estimate, expected):
    assert choose_mode(requested, estimate, threshold=100) == expected


def test_schema_columns_respects_top_level_field_selection():
    assert schema_columns(SCHEMA) == ["name", "email", "address.city"]
    assert schema_columns(SCHEMA, ["address"]) == ["address.city"]


@pytest.mark.asyncio
async def test_synchronous_export_returns_encoded_content(make_coordinator, submission_source):
    submission_source.add({"name": "Ann", "email": "ann@example.com", "address": {"city": "Victoria"}})
    submission_source.add({"name": "Bob", "email": "bob@example.com", "address": {"city": "Nanaimo"}})

    result = await make_coordinator().request_export("form-1", "latest", "csv")

    assert isinstance(result, EncodedExport)
    assert result.filename == "intake_form_submissions.csv"
    assert result.media_type == "text/csv"
    assert result.rows == 2
    rows = list(csv.reader(io.StringIO(result.content.decode("utf-8"))))
    assert rows == [
        ["name", "email", "address.city"],
        ["Ann", "ann@example.com", "Victoria"],
        ["Bob", "bob@example.com", "Nanaimo"],
    ]


@pytest.mark.asyncio
async def test_large_export_is_escalated_to_background_job(make_coordinator, submission_source, created_jobs, enqueued):
    for i in range(5):
        submission_source.add({"name": f"p{i}"})

    coordinator = make_coordinator(EXPORT_SYNC_ROW_THRESHOLD=3)
    job = await coordinator.request_export(
        "form-1",
        1,
        "json",
        filters=ExportFilters(include_drafts=True),
        mode=ExportMode.SYNCHRONOUS,
        include_metadata=True,
    )

    assert job is created_jobs[0]
    assert job.total_estimate == 5
    assert job.format == "json"
    assert job.filters == {"include_drafts": True, "include_deleted": False}
    assert job.include_metadata is True
    coordinator.context.session.commit.assert_awaited_once()
    assert enqueued == [("job-1", "req-123")]
    # No submission rows were read for a scheduled export.
    assert submission_source.fetch_calls == []


@pytest.mark.asyncio
async def test_asynchronous_mode_on_request(make_coordinator, submission_source, created_jobs, enqueued):
    submission_source.add({"name": "Ann"})

    job = await make_coordinator().request_export("form-1", format="xlsx", mode=ExportMode.ASYNCHRONOUS)

    assert job.format == "xlsx"
    assert len(enqueued) == 1


@pytest.mark.asyncio
async def test_synchronous_export_times_out(make_coordinator, submission_source):
    for i in range(6):
        submission_source.add({"name": f"p{i}"})

    async def _slow(call_number):
        await asyncio.sleep(0.2)

    submission_source.on_fetch = _slow

    with pytest.raises(ExportTimeoutError):
        await make_coordinator(EXPORT_SYNC_TIMEOUT_SECONDS=0.05).request_export("form-1")


@pytest.mark.asyncio
async def test_unsupported_format_is_rejected_before_any_io(make_coordinator, submission_source):
    coordinator = make_coordinator()

    with pytest.raises(UnsupportedFormatError):
        await coordinator.request_export("form-1", "latest", "pdf")

    assert submission_source.fetch_calls == []


@pytest.mark.asyncio
async def test_unknown_version_is_not_found(make_coordinator):
    with pytest.raises(NotFoundError):
        await make_coordinator().request_export("form-1", 7, "csv")


@pytest.mark.asyncio
async def test_enqueue_failure_fails_the_job(make_coordinator, submission_source, created_jobs, monkeypatch):
    submission_source.add({"name": "Ann"})
    failed = []

    async def _mark_failed(self, job_id, *, error_message):
        failed.append((job_id, error_message))
        return True

    def _broker_down(job_id, request_id):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(ExportJobService, "mark_failed", _mark_failed)
    coordinator = make_coordinator()
    coordinator.context.enqueue = _broker_down

    with pytest.raises(StorageError):
        await coordinator.request_export("form-1", format="csv", mode=ExportMode.ASYNCHRONOUS)

    assert [job_id for job_id, _ in failed] == ["job-1"]
    assert "broker unreachable" in failed[0][1]
    # Once for the queued job, once for the failure.
    assert coordinator.context.session.commit.await_count == 2


@pytest.mark.asyncio
async def test_template_is_stored_on_scheduled_job(make_coordinator, submission_source, created_jobs):
    submission_source.add({"name": "Ann"})

    job = await make_coordinator().request_export(
        "form-1", format="csv", mode=ExportMode.ASYNCHRONOUS, template="flattenedwithfilled"
    )

    assert job.template == "flattenedWithFilled"


@pytest.mark.asyncio
async def test_unknown_template_is_rejected_before_any_io(make_coordinator, submission_source, created_jobs):
    with pytest.raises(ValidationError):
        await make_coordinator().request_export("form-1", format="csv", template="pivot")

    assert submission_source.fetch_calls == []
    assert created_jobs == []


@pytest.mark.asyncio
async def test_completed_filter_skips_drafts_end_to_end(make_coordinator, form_repo, submission_source):
    form_repo.add_version(
        "form-1",
        2,
        {
            "components": [
                {"type": "textfield", "key": "name", "input": True},
                {"type": "email", "key": "email", "input": True},
            ]
        },
    )
    coordinator = make_coordinator()
    submission_source.add({"name": "Dee", "email": "dee@example.com"}, version=2, status="draft")
    submission_source.add({"name": "Ann", "email": "ann@example.com"}, version=2, status="completed")
    submission_source.add({"name": "Bob", "email": "bob@example.com"}, version=2, status="completed")

    result = await coordinator.request_export("form-1", 2, "csv", filters=ExportFilters(statuses=["completed"]))

    rows = list(csv.reader(io.StringIO(result.content.decode("utf-8"))))
    assert rows == [["name", "email"], ["Ann", "ann@example.com"], ["Bob", "bob@example.com"]]
    assert result.rows == 2
