"""State manager facade for upload bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import UploadAttemptRecord, UploadErrorCode

from .state_store import StateStore
from .state_store_sqlite import epoch_from_utc, utc_from_epoch

logger = logging.getLogger(__name__)


class StateManager:
    """Domain-facing API for upload attempt records.

    Records follow the batches: when the batch store deletes or purges
    batches, the matching rows are removed.
    """

    def __init__(self, store: StateStore) -> None:
        """Initialize with a persistence backend."""
        self._store = store

        self._emitter = get_emitter()
        self._emitter.on(Emitter.BATCH_DELETED, self._handle_batch_deleted)
        self._emitter.on(Emitter.STORE_PURGED, self._handle_store_purged)

    async def _handle_batch_deleted(self, batch_id: str, reason: str) -> None:
        """Handle BATCH_DELETED event - forget the attempts of the batch."""
        await self._store.delete_attempt(batch_id)

    async def _handle_store_purged(self, deleted_count: int) -> None:
        """Handle STORE_PURGED event - forget every attempt."""
        removed = await self._store.delete_all()
        logger.debug("Cleared %s upload attempt records after purge", removed)

    async def attempts_by_batch(self) -> dict[str, UploadAttemptRecord]:
        """Return the persisted attempt records keyed by batch id."""
        return {record.batch_id: record for record in await self._store.list_attempts()}

    async def load_retry_schedule(self) -> dict[str, tuple[int, float | None]]:
        """Return attempts and next retry time (epoch seconds) per batch."""
        schedule: dict[str, tuple[int, float | None]] = {}
        for record in await self._store.list_attempts():
            next_retry_at = (
                None
                if record.next_retry_at is None
                else epoch_from_utc(record.next_retry_at)
            )
            schedule[record.batch_id] = (record.attempts, next_retry_at)
        return schedule

    async def get(self, batch_id: str) -> UploadAttemptRecord | None:
        """Return the attempt record of a batch."""
        return await self._store.get_attempt(batch_id)

    async def record_retry(
        self,
        batch_id: str,
        *,
        error_code: UploadErrorCode,
        error_message: str | None,
        backoff_seconds: float,
        next_retry_at: float,
    ) -> int:
        """Persist a retryable failure.

        Args:
            batch_id: Identifier of the batch.
            error_code: Error code describing the failure type.
            error_message: Human-readable failure message.
            backoff_seconds: Delay applied before the next attempt.
            next_retry_at: Earliest next attempt as epoch seconds.

        Returns:
            Updated attempt count.
        """
        return await self._store.record_retry(
            batch_id,
            error_code=error_code,
            error_message=error_message,
            backoff_seconds=backoff_seconds,
            next_retry_at=utc_from_epoch(next_retry_at),
        )

    async def clear(self, batch_id: str) -> None:
        """Forget the attempts of a batch."""
        await self._store.delete_attempt(batch_id)

    async def prune_missing(self, existing_batch_ids: Iterable[str]) -> int:
        """Drop records of batches that no longer exist on disk."""
        return await self._store.prune_missing(existing_batch_ids)

    def close(self) -> None:
        """Stop listening for store events."""
        self._emitter.remove_listener(Emitter.BATCH_DELETED, self._handle_batch_deleted)
        self._emitter.remove_listener(Emitter.STORE_PURGED, self._handle_store_purged)
