"""
Pydantic Schemas
================

Request and response schemas for API validation.
"""

from app.schemas.base import BaseSchema, CamelSchema, PaginatedResponse, ErrorResponse
from app.schemas.export_job import (
    ExportMode,
    ExportFilters,
    ExportRequest,
    ExportJobAccepted,
    ExportJobStatusResponse,
    ExportJobResponse,
    ExportCancelResponse,
)
from app.schemas.form import (
    FormCreate,
    FormResponse,
    FormVersionCreate,
    FormVersionResponse,
    FormVersionDetailResponse,
)

__all__ = [
    "BaseSchema",
    "CamelSchema",
    "PaginatedResponse",
    "ErrorResponse",
    "ExportMode",
    "ExportFilters",
    "ExportRequest",
    "ExportJobAccepted",
    "ExportJobStatusResponse",
    "ExportJobResponse",
    "ExportCancelResponse",
    "FormCreate",
    "FormResponse",
    "FormVersionCreate",
    "FormVersionResponse",
    "FormVersionDetailResponse",
]
