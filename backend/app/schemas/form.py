from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from app.schemas.base import CamelSchema


class FormCreate(CamelSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enable_status_updates: bool = False


class FormResponse(CamelSchema):
    id: str
    name: str
    description: Optional[str] = None
    active: bool
    enable_status_updates: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FormVersionCreate(CamelSchema):
    """Publish a new schema snapshot for a form."""

    schema_document: dict[str, Any] = Field(..., alias="schema")
    # Defaults to the form's current name.
    display_name: Optional[str] = None


class FormVersionResponse(CamelSchema):
    id: str
    form_id: str
    version: int
    snapshot_name: str
    created_by: Optional[str] = None
    created_at: datetime


class FormVersionDetailResponse(FormVersionResponse):
    schema_document: dict[str, Any] = Field(..., alias="schema", validation_alias="schema")
