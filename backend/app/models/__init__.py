"""
Database Models
===============

SQLAlchemy models for forms, schema snapshots, submissions and export jobs.
"""

from app.models.base import (
    Base,
    TimestampMixin,
    UUIDMixin,
    generate_uuid,
)
from app.models.form import Form, FormVersion
from app.models.submission import Submission, SubmissionStatus
from app.models.export_job import ExportJob, ExportPhase

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "generate_uuid",
    "Form",
    "FormVersion",
    "Submission",
    "SubmissionStatus",
    "ExportJob",
    "ExportPhase",
]
