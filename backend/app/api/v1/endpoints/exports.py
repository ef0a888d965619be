from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse, JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_export_context, get_requester_id
from app.core.database import get_db
from app.schemas.base import PaginatedResponse
from app.schemas.export_job import (
    ExportCancelResponse,
    ExportJobAccepted,
    ExportJobResponse,
    ExportJobStatusResponse,
    ExportRequest,
)
from app.services.export_coordinator import EncodedExport, ExportContext, ExportCoordinator
from app.services.export_job_service import ExportJobService


router = APIRouter()


def get_export_coordinator(context: ExportContext = Depends(get_export_context)) -> ExportCoordinator:
    return ExportCoordinator(context)


def get_export_job_service(db: AsyncSession = Depends(get_db)) -> ExportJobService:
    return ExportJobService(db)


def _job_to_response(job) -> ExportJobResponse:
    return ExportJobResponse.model_validate(job)


@router.post(
    "/exports",
    responses={
        status.HTTP_200_OK: {"description": "Encoded export (synchronous)"},
        status.HTTP_202_ACCEPTED: {"model": ExportJobAccepted, "description": "Export job queued"},
    },
)
async def request_export(
    body: ExportRequest,
    coordinator: ExportCoordinator = Depends(get_export_coordinator),
):
    outcome = await coordinator.request_export(
        body.form_id,
        version_selector=body.version,
        format=body.format,
        filters=body.filters,
        mode=body.mode,
        include_metadata=body.include_metadata,
        template=body.template,
    )

    if isinstance(outcome, EncodedExport):
        return Response(
            content=outcome.content,
            media_type=outcome.media_type,
            headers={
                "Content-Disposition": f'attachment; filename="{outcome.filename}"',
                "X-Export-Rows": str(outcome.rows),
                "X-Export-Warnings": str(len(outcome.warnings)),
            },
        )

    accepted = ExportJobAccepted(
        job_id=str(outcome.id),
        phase=outcome.phase,
        total_estimate=int(outcome.total_estimate or 0),
    )
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump(by_alias=True))


@router.get("/exports", response_model=PaginatedResponse[ExportJobResponse])
async def list_export_jobs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    requester_id: str = Depends(get_requester_id),
    jobs: ExportJobService = Depends(get_export_job_service),
):
    rows, total = await jobs.list_jobs(requester_id=requester_id, page=page, page_size=page_size)
    return PaginatedResponse.create(
        items=[_job_to_response(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/exports/{job_id}/status", response_model=ExportJobStatusResponse)
async def get_export_status(
    job_id: str,
    requester_id: str = Depends(get_requester_id),
    jobs: ExportJobService = Depends(get_export_job_service),
):
    st = await jobs.get_status(job_id, requester_id=requester_id)
    return ExportJobStatusResponse(
        job_id=st.job_id,
        phase=st.phase,
        rows_processed=st.rows_processed,
        total_estimate=st.total_estimate,
        progress=st.progress,
        error_message=st.error_message,
        warnings=st.warnings,
    )


@router.get("/exports/{job_id}/result")
async def download_export_result(
    job_id: str,
    requester_id: str = Depends(get_requester_id),
    jobs: ExportJobService = Depends(get_export_job_service),
):
    job = await jobs.get_result(job_id, requester_id=requester_id)
    await jobs.mark_retrieved(job)
    await jobs.session.commit()

    path = Path(job.file_path)
    return FileResponse(
        path=str(path),
        media_type=job.media_type or "application/octet-stream",
        filename=job.file_name or path.name,
    )


@router.post("/exports/{job_id}/cancel", response_model=ExportCancelResponse)
async def cancel_export(
    job_id: str,
    requester_id: str = Depends(get_requester_id),
    jobs: ExportJobService = Depends(get_export_job_service),
):
    result = await jobs.cancel(job_id, requester_id=requester_id)
    await jobs.session.commit()
    return ExportCancelResponse(job_id=result.job_id, cancelled=result.cancelled, phase=result.phase)
