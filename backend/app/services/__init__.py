"""
Services module initialization.
"""

from app.services.snapshot_service import SnapshotService, derive_snapshot_name
from app.services.submission_stream import SubmissionStreamReader
from app.services.export_job_service import ExportJobService
from app.services.export_coordinator import ExportCoordinator, ExportContext

__all__ = [
    "SnapshotService",
    "derive_snapshot_name",
    "SubmissionStreamReader",
    "ExportJobService",
    "ExportCoordinator",
    "ExportContext",
]
