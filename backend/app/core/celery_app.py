"""Celery app for the export worker.

Export jobs and artifact cleanup run on separate queues so a burst of large
exports never delays garbage collection.
"""

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from app.core.config import settings

EXPORT_QUEUE = "q.exports"
MAINTENANCE_QUEUE = "q.maintenance"

EXPORT_TASK = "app.tasks.export_jobs.run_submission_export_job_task"
CLEANUP_TASK = "app.tasks.maintenance.cleanup_expired_exports_task"


# In-memory transports keep the module importable without Redis.
celery_app = Celery(
    "chefs_export",
    broker=settings.CELERY_BROKER_URL or "memory://",
    backend=settings.CELERY_RESULT_BACKEND or "cache+memory://",
    include=["app.tasks.export_jobs", "app.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A worker crash mid-export leaves the message for redelivery; the runner
    # only picks up jobs still in the queued phase.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue=EXPORT_QUEUE,
    task_queues=(Queue(EXPORT_QUEUE), Queue(MAINTENANCE_QUEUE)),
    task_routes={
        EXPORT_TASK: {"queue": EXPORT_QUEUE},
        CLEANUP_TASK: {"queue": MAINTENANCE_QUEUE},
    },
    beat_schedule={
        "cleanup-expired-exports": {
            "task": CLEANUP_TASK,
            "schedule": crontab(minute=35),
        },
    },
)
