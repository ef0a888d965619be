"""
Form Schema Snapshot Service

Turns a live form builder definition into an immutable, versioned
snapshot and resolves snapshots for exports.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Union

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.middleware.prometheus import record_snapshot_conflict, record_snapshot_created
from app.services.form_version_repository import FormVersionRepository, VersionConflict
from app.services.schema_validator import FormSchemaValidator, SchemaValidator

logger = logging.getLogger(__name__)

LATEST = "latest"

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^-_0-9a-zA-Z]")


def derive_snapshot_name(display_name: str) -> str:
    """Normalise a display name into a file-friendly snapshot name.

    Like a slug, but not guaranteed to be unique (display names are not).

    >>> derive_snapshot_name("My Cool Form!!")
    'my_cool_form'
    """
    collapsed = _WHITESPACE.sub("_", display_name)
    return _DISALLOWED.sub("", collapsed).lower()


def parse_version_selector(selector: Union[str, int, None]) -> Union[str, int]:
    """Accept ``"latest"`` (or nothing) or a positive version number."""
    if selector is None:
        return LATEST
    if isinstance(selector, bool):
        raise ValidationError("version must be 'latest' or a positive integer")
    if isinstance(selector, int):
        value = selector
    else:
        text = str(selector).strip().lower()
        if text in ("", LATEST):
            return LATEST
        if not text.isdigit():
            raise ValidationError("version must be 'latest' or a positive integer")
        value = int(text)
    if value < 1:
        raise ValidationError("version must be 'latest' or a positive integer")
    return value


class SnapshotService:
    """Service for building and resolving form schema snapshots."""

    def __init__(
        self,
        repository: FormVersionRepository,
        validator: Optional[SchemaValidator] = None,
        max_attempts: Optional[int] = None,
    ):
        self.repository = repository
        self.validator = validator or FormSchemaValidator()
        self.max_attempts = int(max_attempts or settings.SNAPSHOT_VERSION_MAX_ATTEMPTS)

    async def build_snapshot(
        self,
        form_id: str,
        raw_schema_document: dict[str, Any],
        display_name: str,
        author_id: Optional[str],
    ):
        """
        Create the next snapshot version for a form.

        Args:
            form_id: Form the snapshot belongs to
            raw_schema_document: Builder document ({"components": [...]})
            display_name: Form display name at publish time
            author_id: Identity of the publisher

        Returns:
            The stored FormVersion

        Raises:
            ValidationError: display name empty or without any usable characters,
                or invalid schema document
            NotFoundError: unknown form
            ConflictError: version allocation kept losing to concurrent writers
        """
        if not isinstance(display_name, str) or not display_name.strip():
            raise ValidationError("display_name must be a non-empty string")
        snapshot_name = derive_snapshot_name(display_name)
        if not snapshot_name:
            raise ValidationError("display_name must contain at least one letter, digit, hyphen or underscore")

        errors = self.validator.validate(raw_schema_document)
        if errors:
            raise ValidationError("Form schema document failed validation", errors=errors)

        if await self.repository.get_form(form_id) is None:
            raise NotFoundError(f"Form {form_id} not found")

        for attempt in range(1, self.max_attempts + 1):
            version = await self.repository.max_version(form_id) + 1
            try:
                snapshot = await self.repository.insert_version(
                    form_id=form_id,
                    version=version,
                    schema=raw_schema_document,
                    snapshot_name=snapshot_name,
                    created_by=author_id,
                )
            except VersionConflict:
                record_snapshot_conflict()
                logger.info(
                    "Snapshot version %s for form %s already claimed (attempt %s/%s)",
                    version,
                    form_id,
                    attempt,
                    self.max_attempts,
                )
                # Let the competing writer finish before re-reading.
                await asyncio.sleep(0)
                continue

            record_snapshot_created()
            logger.info("Created snapshot %s v%s for form %s", snapshot_name, version, form_id)
            return snapshot

        raise ConflictError(
            f"Could not allocate a snapshot version for form {form_id} after {self.max_attempts} attempts"
        )

    async def resolve_version(self, form_id: str, selector: Union[str, int, None] = LATEST):
        selector = parse_version_selector(selector)

        if await self.repository.get_form(form_id) is None:
            raise NotFoundError(f"Form {form_id} not found")

        if selector == LATEST:
            snapshot = await self.repository.latest_version(form_id)
        else:
            snapshot = await self.repository.get_version(form_id, int(selector))

        if snapshot is None:
            raise NotFoundError(f"Version {selector} of form {form_id} not found")
        return snapshot

    async def list_versions(self, form_id: str):
        if await self.repository.get_form(form_id) is None:
            raise NotFoundError(f"Form {form_id} not found")
        return await self.repository.list_versions(form_id)
