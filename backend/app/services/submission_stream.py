"""
Submission Stream Reader

Lazily yields submissions for one form version in storage order
(submission time, then id), fetching fixed-size batches. The next batch is
only requested once the consumer has pulled every row of the previous one,
so an encoder that writes as it reads bounds memory to one batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

from app.core.config import settings
from app.core.exceptions import ExportCancelledError, StorageError
from app.schemas.export_job import ExportFilters
from app.services.submission_repository import Cursor, SubmissionRecord

logger = logging.getLogger(__name__)


CancelCheck = Callable[[], Awaitable[bool]]


class SubmissionSource(Protocol):
    async def fetch_batch(
        self,
        form_id: str,
        version: int,
        filters: ExportFilters,
        *,
        after: Optional[Cursor],
        limit: int,
    ) -> list[SubmissionRecord]: ...

    async def count(self, form_id: str, version: int, filters: ExportFilters) -> int: ...


class SubmissionStreamReader:
    def __init__(
        self,
        source: SubmissionSource,
        *,
        batch_size: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        should_cancel: Optional[CancelCheck] = None,
    ):
        self.source = source
        self.batch_size = int(batch_size or settings.EXPORT_BATCH_SIZE)
        self.retry_attempts = int(retry_attempts or settings.EXPORT_STORAGE_RETRY_ATTEMPTS)
        self.retry_backoff_seconds = float(
            settings.EXPORT_STORAGE_RETRY_BACKOFF_SECONDS if retry_backoff_seconds is None else retry_backoff_seconds
        )
        self.should_cancel = should_cancel

    async def count(self, form_id: str, version: int, filters: ExportFilters) -> int:
        return await self.source.count(form_id, version, filters)

    async def _fetch_with_retry(
        self,
        form_id: str,
        version: int,
        filters: ExportFilters,
        after: Optional[Cursor],
    ) -> list[SubmissionRecord]:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self.source.fetch_batch(
                    form_id, version, filters, after=after, limit=self.batch_size
                )
            except StorageError:
                if attempt >= self.retry_attempts:
                    raise
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Submission batch read failed for form %s v%s (attempt %s/%s); retrying in %.2fs",
                    form_id,
                    version,
                    attempt,
                    self.retry_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        raise StorageError("unreachable")  # pragma: no cover

    async def _raise_if_cancelled(self, form_id: str, version: int, batches: int) -> None:
        if self.should_cancel is not None and await self.should_cancel():
            logger.info("Export stream for form %s v%s cancelled after %s batches", form_id, version, batches)
            raise ExportCancelledError("Export cancelled")

    async def stream(
        self,
        form_id: str,
        version: int,
        filters: Optional[ExportFilters] = None,
    ) -> AsyncIterator[SubmissionRecord]:
        """
        Yield matching submissions batch by batch.

        Each call re-runs the query from the beginning. Rows already yielded
        are not retracted when a later batch fails; callers must discard
        partial output on error.

        Raises:
            StorageError: a batch still failed after all retries
            ExportCancelledError: cancellation was requested between batches
        """
        filters = filters or ExportFilters()
        cursor: Optional[Cursor] = None
        batches = 0

        while True:
            await self._raise_if_cancelled(form_id, version, batches)

            batch = await self._fetch_with_retry(form_id, version, filters, cursor)
            batches += 1

            for record in batch:
                yield record

            if len(batch) < self.batch_size:
                # A cancel that arrived while the last batch was in flight still applies.
                await self._raise_if_cancelled(form_id, version, batches)
                return

            last = batch[-1]
            cursor = (last.created_at, last.id)
            # Give other requests a turn between batches.
            await asyncio.sleep(0)
