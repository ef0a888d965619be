from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.exceptions import ExportCancelledError, StorageError
from app.schemas.export_job import ExportFilters
from app.services.submission_repository import project_data
from app.services.submission_stream import SubmissionStreamReader

from tests.fakes import BASE_TIME


async def _collect(reader, form_id="form-1", version=1, filters=None):
    return [r async for r in reader.stream(form_id, version, filters)]


@pytest.mark.asyncio
async def test_stream_yields_in_storage_order_across_batches(submission_source):
    for i in range(7):
        submission_source.add({"n": i})

    reader = SubmissionStreamReader(submission_source, batch_size=3, retry_backoff_seconds=0)
    rows = await _collect(reader)

    assert [r.data["n"] for r in rows] == list(range(7))
    # 3 + 3 + 1: the short batch ends the stream.
    assert len(submission_source.fetch_calls) == 3
    assert submission_source.fetch_calls[1]["after"] == (rows[2].created_at, rows[2].id)


@pytest.mark.asyncio
async def test_exact_multiple_of_batch_size_needs_one_empty_read(submission_source):
    for i in range(4):
        submission_source.add({"n": i})

    reader = SubmissionStreamReader(submission_source, batch_size=2, retry_backoff_seconds=0)
    rows = await _collect(reader)

    assert len(rows) == 4
    assert len(submission_source.fetch_calls) == 3


@pytest.mark.asyncio
async def test_ties_on_timestamp_are_ordered_by_id(submission_source):
    for i in range(5):
        submission_source.add({"n": i}, created_at=BASE_TIME)

    rows = await _collect(SubmissionStreamReader(submission_source, batch_size=2, retry_backoff_seconds=0))

    assert [r.id for r in rows] == sorted(r.id for r in rows)
    assert len(rows) == 5


@pytest.mark.asyncio
async def test_stream_filters_version_status_deleted_and_dates(submission_source):
    submission_source.add({"k": "keep-1"})
    submission_source.add({"k": "other-version"}, version=2)
    submission_source.add({"k": "draft"}, status="draft")
    submission_source.add({"k": "deleted"}, deleted=True)
    submission_source.add({"k": "keep-2"}, status="completed")
    submission_source.add({"k": "too-late"}, created_at=BASE_TIME + timedelta(days=30))

    reader = SubmissionStreamReader(submission_source, batch_size=10, retry_backoff_seconds=0)
    filters = ExportFilters(max_date=BASE_TIME + timedelta(days=1))

    rows = await _collect(reader, filters=filters)
    assert [r.data["k"] for r in rows] == ["keep-1", "keep-2"]
    assert await reader.count("form-1", 1, filters) == 2


@pytest.mark.asyncio
async def test_drafts_and_deleted_only_when_requested(submission_source):
    submission_source.add({"k": "submitted"})
    submission_source.add({"k": "draft"}, status="draft")
    submission_source.add({"k": "deleted"}, deleted=True)

    reader = SubmissionStreamReader(submission_source, batch_size=10, retry_backoff_seconds=0)
    rows = await _collect(reader, filters=ExportFilters(include_drafts=True, include_deleted=True))

    assert [r.data["k"] for r in rows] == ["submitted", "draft", "deleted"]


@pytest.mark.asyncio
async def test_explicit_statuses_filter(submission_source):
    submission_source.add({"k": "a"}, status="submitted")
    submission_source.add({"k": "b"}, status="completed")

    reader = SubmissionStreamReader(submission_source, batch_size=10, retry_backoff_seconds=0)
    rows = await _collect(reader, filters=ExportFilters(statuses=["completed"]))

    assert [r.data["k"] for r in rows] == ["b"]


def test_project_data_drops_submit_button_and_honours_fields():
    data = {"name": "Ann", "email": "a@example.com", "submit": True}
    assert project_data(data) == {"name": "Ann", "email": "a@example.com"}
    assert project_data(data, ["email"]) == {"email": "a@example.com"}
    assert project_data(None) == {}


@pytest.mark.asyncio
async def test_transient_storage_errors_are_retried(submission_source):
    for i in range(3):
        submission_source.add({"n": i})
    submission_source.failures_remaining = 2

    reader = SubmissionStreamReader(submission_source, batch_size=10, retry_attempts=3, retry_backoff_seconds=0.001)
    rows = await _collect(reader)

    assert [r.data["n"] for r in rows] == [0, 1, 2]
    # Two failed attempts, then the successful read resumes from the start.
    assert len(submission_source.fetch_calls) == 3
    assert all(call["after"] is None for call in submission_source.fetch_calls)


@pytest.mark.asyncio
async def test_storage_error_surfaces_after_retries(submission_source):
    submission_source.add({"n": 1})
    submission_source.failures_remaining = 5

    reader = SubmissionStreamReader(submission_source, batch_size=10, retry_attempts=3, retry_backoff_seconds=0)
    with pytest.raises(StorageError):
        await _collect(reader)

    assert len(submission_source.fetch_calls) == 3


@pytest.mark.asyncio
async def test_failure_mid_stream_keeps_earlier_rows_then_raises(submission_source):
    for i in range(4):
        submission_source.add({"n": i})

    async def _fail_second_batch(call_number):
        if call_number >= 2:
            submission_source.failures_remaining = 1

    submission_source.on_fetch = _fail_second_batch
    reader = SubmissionStreamReader(submission_source, batch_size=2, retry_attempts=1, retry_backoff_seconds=0)

    seen = []
    with pytest.raises(StorageError):
        async for record in reader.stream("form-1", 1):
            seen.append(record.data["n"])

    assert seen == [0, 1]


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_batches(submission_source):
    for i in range(6):
        submission_source.add({"n": i})

    checks = 0

    async def _should_cancel():
        nonlocal checks
        checks += 1
        return checks > 1

    reader = SubmissionStreamReader(
        submission_source, batch_size=2, retry_backoff_seconds=0, should_cancel=_should_cancel
    )

    seen = []
    with pytest.raises(ExportCancelledError):
        async for record in reader.stream("form-1", 1):
            seen.append(record.data["n"])

    # The in-flight batch completes; no further batch is read.
    assert seen == [0, 1]
    assert len(submission_source.fetch_calls) == 1


@pytest.mark.asyncio
async def test_empty_result_set(submission_source):
    reader = SubmissionStreamReader(submission_source, batch_size=5, retry_backoff_seconds=0)
    assert await _collect(reader) == []
    assert len(submission_source.fetch_calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_final_short_batch_still_raises(submission_source):
    submission_source.add({"n": 0})
    cancelled = False

    async def _flag_during_fetch(call_number):
        nonlocal cancelled
        cancelled = True

    async def _should_cancel():
        return cancelled

    submission_source.on_fetch = _flag_during_fetch
    reader = SubmissionStreamReader(
        submission_source, batch_size=2, retry_backoff_seconds=0, should_cancel=_should_cancel
    )

    seen = []
    with pytest.raises(ExportCancelledError):
        async for record in reader.stream("form-1", 1):
            seen.append(record.data["n"])

    assert seen == [0]
    assert len(submission_source.fetch_calls) == 1


@pytest.mark.asyncio
async def test_repeated_streams_yield_identical_sequences(submission_source):
    for i in range(9):
        # Shared timestamps exercise the id tie-break.
        submission_source.add({"n": i}, created_at=BASE_TIME + timedelta(seconds=i // 3))

    reader = SubmissionStreamReader(submission_source, batch_size=4, retry_backoff_seconds=0)
    first = await _collect(reader)
    second = await _collect(reader)

    assert [r.id for r in first] == [r.id for r in second]
    assert [r.data for r in first] == [r.data for r in second]
    assert len(first) == 9
