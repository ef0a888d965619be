"""Maintenance / scheduled tasks.

Removes finished export artifacts (and their job rows) according to
``EXPORT_GC_POLICY``.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path

from celery.utils.log import get_task_logger

from app.core.celery_app import CLEANUP_TASK, celery_app
from app.core.config import settings
from app.core.database import async_session_factory
from app.services.export_job_service import ExportJobService, is_collectable
from app.tasks.export_jobs import _run_async


logger = get_task_logger(__name__)


def _delete_artifact(job_id: str, file_path: str | None) -> bool:
    """Remove a job's export directory; only paths under the export dir are touched."""
    base_dir = ExportJobService.export_base_dir().resolve()
    job_dir = ExportJobService.job_dir(job_id=job_id)

    candidates = [job_dir]
    if file_path:
        candidates.append(Path(file_path).parent)

    deleted = False
    for directory in candidates:
        resolved = directory.resolve()
        if resolved == base_dir or base_dir not in resolved.parents:
            continue
        if resolved.exists():
            shutil.rmtree(resolved, ignore_errors=True)
            deleted = True
    return deleted


async def _cleanup_expired_exports_async(*, batch_size: int, session_factory=None) -> dict:
    now = datetime.now(timezone.utc)
    policy = settings.EXPORT_GC_POLICY
    factory = session_factory or async_session_factory

    deleted_files = 0
    jobs_deleted = 0

    async with factory() as session:
        svc = ExportJobService(session)
        jobs = await svc.collectable_jobs(now=now, policy=policy, limit=int(batch_size))

        for job in jobs:
            if not is_collectable(job, now=now, policy=policy):
                continue
            try:
                if _delete_artifact(str(job.id), job.file_path):
                    deleted_files += 1
            except OSError:
                logger.exception("Failed deleting export artifact for job %s", job.id)
                continue

            await svc.delete_job(job)
            jobs_deleted += 1

        await session.commit()

    logger.info("Export cleanup (%s): %s jobs removed, %s artifacts deleted", policy, jobs_deleted, deleted_files)
    return {
        "ok": True,
        "policy": policy,
        "jobs_deleted": jobs_deleted,
        "deleted_files": deleted_files,
        "batch_size": int(batch_size),
        "ran_at": now.isoformat(),
    }


@celery_app.task(name=CLEANUP_TASK)
def cleanup_expired_exports_task(batch_size: int = 500) -> dict:
    """Delete expired (or, under ``first_retrieval``, downloaded) export artifacts."""
    try:
        return _run_async(_cleanup_expired_exports_async(batch_size=batch_size))
    except Exception:
        logger.exception("Export cleanup task failed")
        raise
