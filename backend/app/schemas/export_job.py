from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import Field, field_validator, model_validator

from app.models.submission import SubmissionStatus
from app.schemas.base import CamelSchema


class ExportMode(str, Enum):
    SYNCHRONOUS = "synchronous"
    ASYNCHRONOUS = "asynchronous"


class ExportFilters(CamelSchema):
    """Submission selection criteria for an export."""

    statuses: Optional[List[SubmissionStatus]] = None
    min_date: Optional[datetime] = None
    max_date: Optional[datetime] = None
    include_drafts: bool = False
    include_deleted: bool = False
    # Restrict exported data to these top-level field keys.
    fields: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_date_range(self):
        if self.min_date and self.max_date and self.min_date > self.max_date:
            raise ValueError("minDate must not be after maxDate")
        return self

    def effective_statuses(self) -> list[str]:
        """Statuses to read; drafts only when explicitly requested."""
        if self.statuses:
            chosen = [SubmissionStatus(s).value for s in self.statuses]
        else:
            chosen = [s.value for s in SubmissionStatus if s != SubmissionStatus.DRAFT]
        if self.include_drafts and SubmissionStatus.DRAFT.value not in chosen:
            chosen.append(SubmissionStatus.DRAFT.value)
        return chosen


class ExportRequest(CamelSchema):
    form_id: str
    version: Optional[Union[int, str]] = None
    format: str = "csv"
    filters: ExportFilters = Field(default_factory=ExportFilters)
    mode: Optional[ExportMode] = None
    include_metadata: bool = False
    # Tabular row layout: unflattened, flattenedWithBlankOut or flattenedWithFilled.
    template: Optional[str] = None

    @field_validator("format")
    @classmethod
    def normalise_format(cls, v: str) -> str:
        return (v or "").strip().lower()


class ExportJobAccepted(CamelSchema):
    job_id: str
    phase: str
    total_estimate: int


class EncodingWarningSchema(CamelSchema):
    submission_id: Optional[str] = None
    field: Optional[str] = None
    message: str


class ExportJobStatusResponse(CamelSchema):
    job_id: str
    phase: str
    rows_processed: int
    total_estimate: int
    progress: Optional[float] = None
    error_message: Optional[str] = None
    warnings: List[EncodingWarningSchema] = Field(default_factory=list)


class ExportJobResponse(CamelSchema):
    id: str
    requester_id: str
    form_id: str
    version: int
    format: str
    filters: dict[str, Any] = Field(default_factory=dict)
    template: Optional[str] = None
    phase: str
    rows_processed: int
    total_estimate: int

    created_at: datetime
    updated_at: datetime

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    file_name: Optional[str] = None
    file_bytes: Optional[int] = None
    file_sha256: Optional[str] = None

    error_message: Optional[str] = None


class ExportCancelResponse(CamelSchema):
    job_id: str
    cancelled: bool
    phase: str
