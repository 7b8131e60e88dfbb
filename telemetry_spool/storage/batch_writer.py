"""Appends events to the open batch file, rotating by size and age."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.errors import DurabilityFailure
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import EventRecord
from telemetry_spool.sampled_logger import make_sampled_logger

from .batch_store import BatchStore

logger = logging.getLogger(__name__)


@dataclass
class _OpenBatch:
    """In-memory accounting for the batch currently receiving appends.

    Args:
        batch_id: Id of the open batch file.
        created_at: Creation time as epoch seconds.
        total_size_bytes: Sum of the payload sizes appended so far.
        event_count: Number of events appended so far.
    """

    batch_id: str
    created_at: float
    total_size_bytes: int = 0
    event_count: int = 0


class BatchWriter:
    """Persist events into batch files.

    Appends are serialised, so events land in the open batch in the order
    ``append`` acquired the writer. An event is acknowledged (``append``
    returns True) only once its frame has been fsynced.
    """

    def __init__(
        self,
        *,
        store: BatchStore,
        consent: ConsentGate,
        max_batch_size_bytes: int,
        max_batch_age_seconds: float,
        clock: Callable[[], float] = time.time,
        drop_log_interval: int = 100,
    ) -> None:
        """Initialise BatchWriter.

        Args:
            store: Batch store owning the files.
            consent: Consent gate consulted before every write.
            max_batch_size_bytes: Payload bytes after which a batch is rotated.
            max_batch_age_seconds: Age after which the open batch is rotated.
            clock: Wall clock returning epoch seconds.
            drop_log_interval: Log every Nth dropped event per reason.
        """
        self._store = store
        self._consent = consent
        self._max_batch_size_bytes = max_batch_size_bytes
        self._max_batch_age_seconds = max_batch_age_seconds
        self._clock = clock

        self._lock = asyncio.Lock()
        self._open: _OpenBatch | None = None
        self._purge_generation = 0

        self._log_dropped = make_sampled_logger(
            "Dropped event (%s), occurrence %d: %s",
            log_interval=drop_log_interval,
            target_logger=logger,
        )

        self._emitter = get_emitter()
        self._emitter.on(Emitter.STORE_PURGED, self._on_store_purged)

    @property
    def open_batch_id(self) -> str | None:
        """Id of the batch currently receiving appends, if any."""
        return self._open.batch_id if self._open else None

    def _on_store_purged(self, deleted_count: int) -> None:
        """Handle STORE_PURGED event: the open batch file is gone."""
        if self._open is not None:
            logger.info("Open batch %s was purged", self._open.batch_id)
        self._open = None
        self._purge_generation += 1

    def _drop(self, reason: str, event: EventRecord, detail: str = "") -> None:
        self._log_dropped(reason, detail or f"{event.size_bytes} bytes")
        self._emitter.emit(Emitter.EVENT_DROPPED, reason, event.size_bytes)

    def _should_rotate(
        self, open_batch: _OpenBatch, event: EventRecord, now: float
    ) -> bool:
        if open_batch.event_count == 0:
            return False
        if open_batch.total_size_bytes + event.size_bytes > self._max_batch_size_bytes:
            return True
        return now - open_batch.created_at > self._max_batch_age_seconds

    async def append(self, event: EventRecord) -> bool:
        """Append an event to the open batch.

        Never raises: failures drop the event and are logged.

        Args:
            event: Event to persist.

        Returns:
            True once the event is durable, False if it was dropped.
        """
        try:
            async with self._lock:
                return await self._append_locked(event)
        except DurabilityFailure as exc:
            self._drop("durability_failure", event, str(exc))
            return False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error appending event")
            self._drop("unexpected_error", event, str(exc))
            return False

    async def _append_locked(self, event: EventRecord) -> bool:
        if not self._consent.allows_persist():
            self._drop("consent_not_granted", event)
            return False

        generation = self._purge_generation
        now = self._clock()
        if self._open is not None and self._should_rotate(self._open, event, now):
            await self._close_open_batch()

        frame = event.to_frame()
        if not self._store.has_free_disk_for_write(len(frame)):
            raise DurabilityFailure("Insufficient free disk space")
        if not await self._store.ensure_capacity(len(frame)):
            raise DurabilityFailure("Storage limit reached")

        if self._open is None:
            batch_id = await self._store.create_open_batch(now)
            self._open = _OpenBatch(batch_id=batch_id, created_at=now)

        open_batch = self._open
        try:
            async with self._store.lock_for(open_batch.batch_id):
                # A purge may have run while this append created the batch or
                # waited for the lock.
                purged = (
                    generation != self._purge_generation
                    or self._open is not open_batch
                    or not self._consent.allows_persist()
                )
                if not purged:
                    await self._store.append_frame(open_batch.batch_id, frame)
        except DurabilityFailure:
            # The tail may hold a partial frame: never append after it.
            if self._open is open_batch:
                await self._close_open_batch()
            raise

        if purged:
            await self._discard_purged_batch(open_batch)
            self._drop("purged_during_append", event)
            return False

        open_batch.total_size_bytes += event.size_bytes
        open_batch.event_count += 1
        return True

    async def _discard_purged_batch(self, open_batch: _OpenBatch) -> None:
        """Forget a batch a purge raced with and remove any file it left."""
        if self._open is open_batch:
            self._open = None
        await self._store.delete(open_batch.batch_id, reason="purged")

    async def _close_open_batch(self) -> str | None:
        open_batch = self._open
        if open_batch is None:
            return None
        self._open = None

        if open_batch.event_count == 0:
            await self._store.delete(open_batch.batch_id, reason="empty")
            return None

        await self._store.close_batch(
            open_batch.batch_id,
            total_size_bytes=open_batch.total_size_bytes,
            event_count=open_batch.event_count,
        )
        return open_batch.batch_id

    async def rotate(self) -> str | None:
        """Close the open batch now.

        Returns:
            Id of the closed batch, or None if there was nothing to close.
        """
        try:
            async with self._lock:
                return await self._close_open_batch()
        except DurabilityFailure:
            logger.exception("Failed to rotate open batch")
            return None

    async def close_if_expired(self, now: float) -> str | None:
        """Close the open batch if it is older than the batch age limit.

        Args:
            now: Current time as epoch seconds.

        Returns:
            Id of the closed batch, or None.
        """
        try:
            async with self._lock:
                open_batch = self._open
                if open_batch is None or open_batch.event_count == 0:
                    return None
                if now - open_batch.created_at <= self._max_batch_age_seconds:
                    return None
                return await self._close_open_batch()
        except DurabilityFailure:
            logger.exception("Failed to close expired batch")
            return None

    def close(self) -> None:
        """Stop listening for store events."""
        self._emitter.remove_listener(Emitter.STORE_PURGED, self._on_store_purged)
