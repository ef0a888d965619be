from __future__ import annotations

from typing import List, Optional, Union

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_optional_requester_id
from app.core.database import get_db
from app.core.exceptions import NotFoundError
from app.schemas.form import (
    FormCreate,
    FormResponse,
    FormVersionCreate,
    FormVersionDetailResponse,
    FormVersionResponse,
)
from app.services.form_version_repository import FormVersionRepository
from app.services.snapshot_service import SnapshotService


router = APIRouter()


def get_snapshot_service(db: AsyncSession = Depends(get_db)) -> SnapshotService:
    return SnapshotService(FormVersionRepository(db))


@router.post("/forms", response_model=FormResponse, status_code=status.HTTP_201_CREATED)
async def create_form(
    body: FormCreate,
    requester_id: Optional[str] = Depends(get_optional_requester_id),
    snapshots: SnapshotService = Depends(get_snapshot_service),
):
    form = await snapshots.repository.create_form(
        name=body.name,
        description=body.description,
        enable_status_updates=body.enable_status_updates,
        created_by=requester_id,
    )
    await snapshots.repository.session.commit()
    return FormResponse.model_validate(form)


@router.post(
    "/forms/{form_id}/versions",
    response_model=FormVersionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def publish_form_version(
    form_id: str,
    body: FormVersionCreate,
    requester_id: Optional[str] = Depends(get_optional_requester_id),
    snapshots: SnapshotService = Depends(get_snapshot_service),
):
    """Snapshot the submitted builder schema as the form's next version."""
    display_name = body.display_name
    if display_name is None:
        form = await snapshots.repository.get_form(form_id)
        if form is None:
            raise NotFoundError(f"Form {form_id} not found")
        display_name = form.name

    snapshot = await snapshots.build_snapshot(form_id, body.schema_document, display_name, requester_id)
    await snapshots.repository.session.commit()
    return FormVersionResponse.model_validate(snapshot)


@router.get("/forms/{form_id}/versions", response_model=List[FormVersionResponse])
async def list_form_versions(
    form_id: str,
    snapshots: SnapshotService = Depends(get_snapshot_service),
):
    versions = await snapshots.list_versions(form_id)
    return [FormVersionResponse.model_validate(v) for v in versions]


@router.get("/forms/{form_id}/versions/{version}", response_model=FormVersionDetailResponse)
async def get_form_version(
    form_id: str,
    version: Union[int, str],
    snapshots: SnapshotService = Depends(get_snapshot_service),
):
    snapshot = await snapshots.resolve_version(form_id, version)
    return FormVersionDetailResponse.model_validate(snapshot)
