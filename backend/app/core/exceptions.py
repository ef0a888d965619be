"""
Service Errors
==============

Error taxonomy shared by the snapshot and export pipelines.

Every error carries the HTTP status it maps to and a short machine code;
``app.main`` renders them as ``ErrorResponse`` bodies.
"""

from __future__ import annotations

from typing import Any, Optional


class ExportServiceError(Exception):
    """Base class for all domain errors raised by this service."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str, *, errors: Optional[list[Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.errors = list(errors) if errors else []


class ValidationError(ExportServiceError):
    """Bad schema document or request shape (user-fixable)."""

    status_code = 422
    code = "validation_error"


class NotFoundError(ExportServiceError):
    """Unknown form, form version or export job."""

    status_code = 404
    code = "not_found"


class ConflictError(ExportServiceError):
    """Version allocation lost the race too many times."""

    status_code = 409
    code = "conflict"


class UnsupportedFormatError(ExportServiceError):
    status_code = 422
    code = "unsupported_format"


class StorageError(ExportServiceError):
    """Transient or permanent failure reading from / writing to storage."""

    status_code = 503
    code = "storage_error"


class EncodingError(ExportServiceError):
    """A single value cannot be represented in the target format.

    Never fatal: encoders convert it into a warning and a placeholder.
    """

    status_code = 422
    code = "encoding_error"

    def __init__(self, detail: str, *, field: str | None = None, value_type: str | None = None):
        super().__init__(detail)
        self.field = field
        self.value_type = value_type


class ExportTimeoutError(ExportServiceError, TimeoutError):
    status_code = 504
    code = "timeout"


class ExportCancelledError(ExportServiceError):
    status_code = 409
    code = "cancelled"


class ExportNotReadyError(ExportServiceError):
    status_code = 409
    code = "not_ready"


class ExportFailedError(ExportServiceError):
    status_code = 409
    code = "export_failed"


class ExportExpiredError(ExportServiceError):
    status_code = 410
    code = "expired"
