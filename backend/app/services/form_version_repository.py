"""Storage access for forms and their schema snapshots."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StorageError
from app.models.base import parse_uuid
from app.models.form import Form, FormVersion


class VersionConflict(Exception):
    """The (form_id, version) pair was claimed by a concurrent writer."""


class FormVersionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_form(self, form_id: str) -> Form | None:
        # Ids that are not UUIDs cannot match a row; the column would reject them.
        form_id = parse_uuid(form_id)
        if form_id is None:
            return None
        try:
            return await self.session.get(Form, form_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read form {form_id}") from e

    async def create_form(
        self,
        *,
        name: str,
        description: Optional[str] = None,
        enable_status_updates: bool = False,
        created_by: Optional[str] = None,
    ) -> Form:
        form = Form(
            name=name,
            description=description,
            enable_status_updates=enable_status_updates,
            created_by=created_by,
        )
        self.session.add(form)
        await self.session.flush()
        return form

    async def max_version(self, form_id: str) -> int:
        form_id = parse_uuid(form_id)
        if form_id is None:
            return 0
        stmt = select(func.max(FormVersion.version)).where(FormVersion.form_id == form_id)
        try:
            return int((await self.session.execute(stmt)).scalar() or 0)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read versions for form {form_id}") from e

    async def insert_version(
        self,
        *,
        form_id: str,
        version: int,
        schema: dict[str, Any],
        snapshot_name: str,
        created_by: Optional[str],
    ) -> FormVersion:
        """Insert a snapshot unless the version is already claimed.

        Runs inside a SAVEPOINT so that a unique violation only rolls back
        this insert, leaving the caller's transaction usable for a retry.
        """
        row = FormVersion(
            form_id=form_id,
            version=version,
            schema=schema,
            snapshot_name=snapshot_name,
            created_by=created_by,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(row)
                await self.session.flush()
        except IntegrityError as e:
            raise VersionConflict(f"version {version} already claimed for form {form_id}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to store snapshot for form {form_id}") from e
        return row

    async def get_version(self, form_id: str, version: int) -> FormVersion | None:
        form_id = parse_uuid(form_id)
        if form_id is None:
            return None
        stmt = select(FormVersion).where(FormVersion.form_id == form_id, FormVersion.version == version)
        try:
            return (await self.session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read version {version} of form {form_id}") from e

    async def latest_version(self, form_id: str) -> FormVersion | None:
        form_id = parse_uuid(form_id)
        if form_id is None:
            return None
        stmt = (
            select(FormVersion)
            .where(FormVersion.form_id == form_id)
            .order_by(FormVersion.version.desc())
            .limit(1)
        )
        try:
            return (await self.session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read latest version of form {form_id}") from e

    async def list_versions(self, form_id: str) -> list[FormVersion]:
        form_id = parse_uuid(form_id)
        if form_id is None:
            return []
        stmt = select(FormVersion).where(FormVersion.form_id == form_id).order_by(FormVersion.version.asc())
        try:
            return list((await self.session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list versions of form {form_id}") from e
