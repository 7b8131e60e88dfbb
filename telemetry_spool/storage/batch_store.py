"""Inventory of the batch files on disk.

The store is the only component that creates, renames or removes batch
files. Every operation on a batch file runs under that batch's lock, so an
upload never reads a file that is being deleted and a purge never races an
append.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiofiles
import aiofiles.os

from telemetry_spool.errors import DurabilityFailure
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import Batch, decode_frames

from .batch_filesystem import _BatchFilesystem, batch_created_at
from .storage_budget import StorageBudget, scan_used_bytes

logger = logging.getLogger(__name__)


class BatchLease:
    """A batch borrowed for the duration of one upload attempt.

    Only valid inside ``BatchStore.checkout``; the batch lock is held for the
    whole lifetime of the lease.
    """

    def __init__(self, store: BatchStore, batch: Batch) -> None:
        """Initialise BatchLease.

        Args:
            store: Store that owns the batch file.
            batch: The leased batch.
        """
        self._store = store
        self.batch = batch

    async def delete(self, reason: str) -> bool:
        """Delete the leased batch while still holding its lock.

        Args:
            reason: Why the batch is removed (logged and emitted).

        Returns:
            True if a file was removed.
        """
        return await self._store._delete_locked(self.batch.batch_id, reason)


class BatchStore:
    """Manage the set of batch files in the spool directory."""

    def __init__(self, spool_dir: Path, budget: StorageBudget) -> None:
        """Initialise BatchStore.

        Args:
            spool_dir: Directory holding the batch files.
            budget: Storage budget tracking bytes on disk.
        """
        self._filesystem = _BatchFilesystem(spool_dir)
        self._budget = budget
        self._locks: dict[str, asyncio.Lock] = {}
        self._emitter = get_emitter()

    @property
    def spool_dir(self) -> Path:
        """Return the spool directory."""
        return self._filesystem.spool_dir

    def lock_for(self, batch_id: str) -> asyncio.Lock:
        """Return the lock guarding a batch file."""
        lock = self._locks.get(batch_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[batch_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover(self) -> int:
        """Close batches left open by a previous process.

        Trailing partial frames are truncated and empty batches removed, so
        every acknowledged event of a crashed process becomes uploadable.

        Returns:
            Number of batches closed.
        """
        closed = 0
        for batch_id in self._filesystem.list_open_ids():
            path = self._filesystem.open_path(batch_id)
            async with self.lock_for(batch_id):
                try:
                    async with aiofiles.open(path, "rb") as f:
                        data = await f.read()
                    events, consumed = decode_frames(data)
                    if not events:
                        await aiofiles.os.remove(path)
                        logger.info("Removed empty batch %s during recovery", batch_id)
                        continue
                    if consumed < len(data):
                        logger.warning(
                            "Truncating %s trailing bytes of batch %s",
                            len(data) - consumed,
                            batch_id,
                        )
                        await asyncio.to_thread(os.truncate, path, consumed)
                    closed_path = self._filesystem.closed_path(batch_id)
                    await aiofiles.os.rename(path, closed_path)
                except OSError:
                    logger.exception("Failed to recover batch %s", batch_id)
                    continue
            closed += 1
            logger.info(
                "Recovered batch %s with %s events from a previous run",
                batch_id,
                len(events),
            )
        await self._filesystem.fsync_dir()
        self._budget.refresh(force=True)
        return closed

    # -------------------------------------------------------------------------
    # Writer primitives
    # -------------------------------------------------------------------------

    async def create_open_batch(self, now: float) -> str:
        """Create an empty open batch file.

        Args:
            now: Creation time as epoch seconds.

        Returns:
            Id of the new batch.

        Raises:
            DurabilityFailure: If the file could not be created.
        """
        batch_id = self._filesystem.new_batch_id(now)
        path = self._filesystem.open_path(batch_id)
        try:
            async with aiofiles.open(path, "xb"):
                pass
            await self._filesystem.fsync_dir()
        except OSError as exc:
            raise DurabilityFailure(
                f"Failed to create batch file {path}: {exc}", batch_id
            ) from exc
        logger.debug("Opened batch %s", batch_id)
        return batch_id

    async def append_frame(self, batch_id: str, frame: bytes) -> None:
        """Durably append an encoded event frame to an open batch.

        The caller must hold the batch lock. Returns once the data is fsynced.

        Args:
            batch_id: Id of the open batch.
            frame: Encoded event frame.

        Raises:
            DurabilityFailure: If the batch is gone or the write failed.
        """
        path = self._filesystem.open_path(batch_id)
        if not path.exists():
            raise DurabilityFailure(f"Open batch {batch_id} no longer exists", batch_id)
        try:
            async with aiofiles.open(path, "ab") as f:
                await f.write(frame)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
        except OSError as exc:
            raise DurabilityFailure(
                f"Failed to append to batch {batch_id}: {exc}", batch_id
            ) from exc
        self._budget.record_write(len(frame))

    async def close_batch(
        self, batch_id: str, *, total_size_bytes: int, event_count: int
    ) -> None:
        """Rotate an open batch out, making it an upload candidate.

        Args:
            batch_id: Id of the open batch.
            total_size_bytes: Payload bytes held by the batch.
            event_count: Number of events held by the batch.

        Raises:
            DurabilityFailure: If the rename failed.
        """
        async with self.lock_for(batch_id):
            source = self._filesystem.open_path(batch_id)
            try:
                await aiofiles.os.rename(source, self._filesystem.closed_path(batch_id))
                await self._filesystem.fsync_dir()
            except FileNotFoundError:
                logger.warning("Batch %s vanished before it could be closed", batch_id)
                return
            except OSError as exc:
                raise DurabilityFailure(
                    f"Failed to close batch {batch_id}: {exc}", batch_id
                ) from exc

        logger.info(
            "Closed batch %s (events=%s, bytes=%s)",
            batch_id,
            event_count,
            total_size_bytes,
        )
        self._emitter.emit(
            Emitter.BATCH_CLOSED, batch_id, total_size_bytes, event_count
        )

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    def list_pending_batch_ids(self) -> list[str]:
        """Return the ids of closed batches, oldest first.

        The open batch is never included.
        """
        return self._filesystem.list_closed_ids()

    async def read_batch(self, batch_id: str) -> Batch | None:
        """Load a closed batch from disk.

        Args:
            batch_id: Id of the batch.

        Returns:
            The batch, or None if it does not exist (anymore).
        """
        path = self._filesystem.closed_path(batch_id)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        events, _ = decode_frames(data)
        return Batch(
            batch_id=batch_id,
            created_at=batch_created_at(batch_id),
            events=tuple(events),
        )

    async def list_pending_batches(self) -> list[Batch]:
        """Return all closed batches, oldest first."""
        batches: list[Batch] = []
        for batch_id in self.list_pending_batch_ids():
            batch = await self.read_batch(batch_id)
            if batch is not None:
                batches.append(batch)
        return batches

    def total_bytes_on_disk(self) -> int:
        """Return the bytes currently used by batch files."""
        return scan_used_bytes(self.spool_dir)

    @asynccontextmanager
    async def checkout(self, batch_id: str) -> AsyncIterator[BatchLease | None]:
        """Borrow a closed batch for one upload attempt.

        The batch lock is held until the context exits. Yields None if the
        batch no longer exists.

        Args:
            batch_id: Id of the batch.
        """
        async with self.lock_for(batch_id):
            batch = await self.read_batch(batch_id)
            if batch is None:
                yield None
            else:
                yield BatchLease(self, batch)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def _delete_locked(self, batch_id: str, reason: str) -> bool:
        """Remove the files of a batch. The caller must hold the batch lock."""
        removed = False
        for path in (
            self._filesystem.closed_path(batch_id),
            self._filesystem.open_path(batch_id),
        ):
            try:
                size = path.stat().st_size
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                continue
            self._budget.release(size)
            removed = True

        self._locks.pop(batch_id, None)
        if removed:
            logger.debug("Deleted batch %s (%s)", batch_id, reason)
            self._emitter.emit(Emitter.BATCH_DELETED, batch_id, reason)
        return removed

    async def delete(self, batch_id: str, reason: str = "deleted") -> bool:
        """Delete a batch. Deleting an unknown id is a no-op.

        Args:
            batch_id: Id of the batch.
            reason: Why the batch is removed.

        Returns:
            True if a file was removed.
        """
        async with self.lock_for(batch_id):
            return await self._delete_locked(batch_id, reason)

    async def purge_all(self) -> int:
        """Delete every stored batch, open and closed, immediately.

        Returns:
            Number of batches removed.
        """
        batch_ids = sorted(
            set(self._filesystem.list_open_ids())
            | set(self._filesystem.list_closed_ids())
        )
        deleted_count = 0
        for batch_id in batch_ids:
            if await self.delete(batch_id, reason="purged"):
                deleted_count += 1

        await self._filesystem.fsync_dir()
        self._budget.refresh(force=True)
        logger.info("Purged %s batches from %s", deleted_count, self.spool_dir)
        self._emitter.emit(Emitter.STORE_PURGED, deleted_count)
        return deleted_count

    async def evict_expired(self, now: float, max_age: float) -> list[str]:
        """Delete closed batches older than ``max_age``.

        Batches currently leased to an upload are skipped and reconsidered on
        the next call.

        Args:
            now: Current time as epoch seconds.
            max_age: Retention in seconds.

        Returns:
            Ids of the evicted batches.
        """
        evicted: list[str] = []
        for batch_id in self.list_pending_batch_ids():
            if now - batch_created_at(batch_id) <= max_age:
                break
            lock = self.lock_for(batch_id)
            if lock.locked():
                logger.debug("Batch %s expired but is in use, retrying later", batch_id)
                continue
            async with lock:
                if await self._delete_locked(batch_id, reason="expired"):
                    evicted.append(batch_id)

        if evicted:
            logger.warning(
                "Evicted %s batches older than %.0fs: %s",
                len(evicted),
                max_age,
                ", ".join(evicted),
            )
        return evicted

    def has_free_disk_for_write(self, bytes_to_write: int) -> bool:
        """Check the filesystem keeps its free-space margin after a write."""
        return self._budget.has_free_disk_for_write(bytes_to_write)

    async def ensure_capacity(self, incoming_bytes: int) -> bool:
        """Make room for a write by evicting the oldest closed batches.

        Batches are evicted by age (creation order), never by access.

        Args:
            incoming_bytes: Bytes about to be written.

        Returns:
            True if the write fits under the storage limit.
        """
        if self._budget.fits(incoming_bytes):
            return True

        for batch_id in self.list_pending_batch_ids():
            lock = self.lock_for(batch_id)
            if lock.locked():
                continue
            async with lock:
                if await self._delete_locked(batch_id, reason="storage_limit"):
                    logger.warning(
                        "Storage limit reached, evicted oldest batch %s", batch_id
                    )
            if self._budget.fits(incoming_bytes):
                return True

        return self._budget.fits(incoming_bytes)
