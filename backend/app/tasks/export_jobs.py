"""Export job tasks."""

from __future__ import annotations

import asyncio
import time

from celery.utils.log import get_task_logger

from app.core.celery_app import EXPORT_TASK, celery_app
from app.core.database import async_session_factory
from app.middleware.prometheus import record_celery_task
from app.models.export_job import ExportPhase
from app.services.export_job_runner import ExportJobRunner


logger = get_task_logger(__name__)

TASK_NAME = EXPORT_TASK


def _run_async(coro):
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = None

    if loop is not None and loop.is_running():
        new_loop = asyncio.new_event_loop()
        try:
            return new_loop.run_until_complete(coro)
        finally:
            new_loop.close()

    return asyncio.run(coro)


@celery_app.task(name=TASK_NAME)
def run_submission_export_job_task(*, job_id: str, request_id: str | None = None) -> str:
    """Run one queued submission export and return its final phase."""
    started = time.monotonic()
    logger.info("Starting export job %s (request %s)", job_id, request_id or "-")

    try:
        phase = _run_async(ExportJobRunner(async_session_factory).run(job_id))
    except Exception:
        record_celery_task(TASK_NAME, False, time.monotonic() - started)
        logger.exception("Export job %s crashed", job_id)
        raise

    record_celery_task(TASK_NAME, phase == ExportPhase.COMPLETE.value, time.monotonic() - started)
    logger.info("Export job %s finished: %s", job_id, phase)
    return phase
