"""Batched submission reads for exports.

Every call opens its own short-lived session from the factory, so a
pooled connection is held for one batch only, never for a whole export.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import StorageError
from app.models.submission import Submission
from app.schemas.export_job import ExportFilters


# Builder submit buttons store a boolean under this key; never exported.
SUBMIT_BUTTON_KEY = "submit"


@dataclass(frozen=True)
class SubmissionRecord:
    id: str
    form_id: str
    version: int
    status: str
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    submitter: Optional[str] = None
    confirmation_id: Optional[str] = None


Cursor = tuple[datetime, str]


def project_data(data: dict[str, Any] | None, fields: Optional[list[str]] = None) -> dict[str, Any]:
    """Copy submission data, keeping only requested keys (if any)."""
    source = data or {}
    if fields:
        wanted = set(fields)
        return {k: v for k, v in source.items() if k in wanted}
    return {k: v for k, v in source.items() if k != SUBMIT_BUTTON_KEY}


def to_record(row: Submission, fields: Optional[list[str]] = None) -> SubmissionRecord:
    return SubmissionRecord(
        id=str(row.id),
        form_id=str(row.form_id),
        version=int(row.version),
        status=str(row.status),
        created_at=row.created_at,
        data=project_data(row.data, fields),
        submitter=row.submitter,
        confirmation_id=row.confirmation_id,
    )


class SubmissionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _filtered(stmt, form_id: str, version: int, filters: ExportFilters):
        stmt = stmt.where(
            Submission.form_id == form_id,
            Submission.version == version,
            Submission.status.in_(filters.effective_statuses()),
        )
        if not filters.include_deleted:
            stmt = stmt.where(Submission.deleted.is_(False))
        if filters.min_date is not None:
            stmt = stmt.where(Submission.created_at >= filters.min_date)
        if filters.max_date is not None:
            stmt = stmt.where(Submission.created_at <= filters.max_date)
        return stmt

    async def fetch_batch(
        self,
        form_id: str,
        version: int,
        filters: ExportFilters,
        *,
        after: Optional[Cursor],
        limit: int,
    ) -> list[SubmissionRecord]:
        stmt = self._filtered(select(Submission), form_id, version, filters)
        if after is not None:
            created_at, last_id = after
            stmt = stmt.where(
                or_(
                    Submission.created_at > created_at,
                    and_(Submission.created_at == created_at, Submission.id > last_id),
                )
            )
        stmt = stmt.order_by(Submission.created_at.asc(), Submission.id.asc()).limit(int(limit))

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed reading submissions for form {form_id} v{version}") from e

        return [to_record(r, filters.fields) for r in rows]

    async def count(self, form_id: str, version: int, filters: ExportFilters) -> int:
        stmt = self._filtered(select(func.count()).select_from(Submission), form_id, version, filters)
        try:
            async with self.session_factory() as session:
                return int((await session.execute(stmt)).scalar() or 0)
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed counting submissions for form {form_id} v{version}") from e
