"""SQLite-backed upload bookkeeping store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from telemetry_spool.models import UploadAttemptRecord, UploadErrorCode

from .state_store import StateStore
from .tables import metadata, upload_attempts

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_from_epoch(epoch_seconds: float) -> datetime:
    """Convert epoch seconds to the naive UTC datetimes stored in the db."""
    return datetime.fromtimestamp(epoch_seconds, timezone.utc).replace(tzinfo=None)


def epoch_from_utc(value: datetime) -> float:
    """Convert a naive UTC datetime read from the db to epoch seconds."""
    return value.replace(tzinfo=timezone.utc).timestamp()


class SqliteStateStore(StateStore):
    """SQLite StateStore for upload attempts only.

    The batch files are the source of truth; a row only describes how often
    a batch that still exists on disk has failed to upload.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the SQLite engine."""
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            future=True,
        )

    async def init_async_store(self) -> None:
        """Apply pragmas and ensure schema."""
        await self._apply_pragmas()
        await self._ensure_schema()

    async def _apply_pragmas(self) -> None:
        """Apply database pragmas.

        WAL keeps readers (the status command) from blocking the scheduler,
        NORMAL synchronous is enough for advisory bookkeeping.
        """
        async with self._engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL;"))
            await conn.execute(text("PRAGMA synchronous=NORMAL;"))

    async def _ensure_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def get_attempt(self, batch_id: str) -> UploadAttemptRecord | None:
        """Return the attempt record of a batch.

        Args:
            batch_id (str): Identifier of the batch.

        Returns:
            UploadAttemptRecord | None: The record if the batch ever failed.
        """
        async with self._engine.begin() as conn:
            row = (
                (
                    await conn.execute(
                        select(upload_attempts).where(
                            upload_attempts.c.batch_id == batch_id
                        )
                    )
                )
                .mappings()
                .one_or_none()
            )
        if row is None:
            return None
        return UploadAttemptRecord.from_row(dict(row))

    async def list_attempts(self) -> list[UploadAttemptRecord]:
        """Return all attempt records, oldest batch first."""
        async with self._engine.begin() as conn:
            rows = (
                (
                    await conn.execute(
                        select(upload_attempts).order_by(
                            upload_attempts.c.batch_id.asc()
                        )
                    )
                )
                .mappings()
                .all()
            )
        return [UploadAttemptRecord.from_row(dict(row)) for row in rows]

    async def record_retry(
        self,
        batch_id: str,
        *,
        error_code: UploadErrorCode,
        error_message: str | None,
        backoff_seconds: float,
        next_retry_at: datetime,
    ) -> int:
        """Record a retryable failure of a batch.

        Args:
            batch_id: Identifier of the batch.
            error_code: Error code describing the failure type.
            error_message: Human-readable failure message.
            backoff_seconds: Delay applied before the next attempt.
            next_retry_at: Earliest time of the next attempt (naive UTC).

        Returns:
            int: Updated attempt count.
        """
        now = _utc_now()
        stmt = insert(upload_attempts).values(
            batch_id=batch_id,
            attempts=1,
            next_retry_at=next_retry_at,
            last_error_code=error_code,
            last_error_message=error_message,
            last_backoff_seconds=float(backoff_seconds),
            created_at=now,
            last_updated=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["batch_id"],
            set_={
                "attempts": upload_attempts.c.attempts + 1,
                "next_retry_at": next_retry_at,
                "last_error_code": error_code,
                "last_error_message": error_message,
                "last_backoff_seconds": float(backoff_seconds),
                "last_updated": now,
            },
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)
            attempts = (
                await conn.execute(
                    select(upload_attempts.c.attempts).where(
                        upload_attempts.c.batch_id == batch_id
                    )
                )
            ).scalar_one()
        return int(attempts)

    async def delete_attempt(self, batch_id: str) -> None:
        """Delete the attempt record of a batch, if any."""
        async with self._engine.begin() as conn:
            await conn.execute(
                delete(upload_attempts).where(upload_attempts.c.batch_id == batch_id)
            )

    async def delete_all(self) -> int:
        """Delete every attempt record.

        Returns:
            int: Number of rows removed.
        """
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(upload_attempts))
        return int(result.rowcount or 0)

    async def prune_missing(self, existing_batch_ids: Iterable[str]) -> int:
        """Delete records of batches that are no longer on disk.

        Args:
            existing_batch_ids: Ids of the batches currently stored.

        Returns:
            int: Number of rows removed.
        """
        existing = list(existing_batch_ids)
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(upload_attempts).where(
                    upload_attempts.c.batch_id.not_in(existing)
                )
            )
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Pruned %s stale upload attempt records", removed)
        return removed

    async def close(self) -> None:
        """Close the database connection and dispose of the engine.

        This must be called before the event loop closes to prevent
        aiosqlite worker thread exceptions.
        """
        await self._engine.dispose()
