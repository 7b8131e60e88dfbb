"""Protocol for upload bookkeeping persistence."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from telemetry_spool.models import UploadAttemptRecord, UploadErrorCode


class StateStore(Protocol):
    """Persistence interface for per-batch upload attempts."""

    async def init_async_store(self) -> None:
        """Prepare the backend (schema, pragmas)."""
        ...

    async def get_attempt(self, batch_id: str) -> UploadAttemptRecord | None:
        """Get the attempt record of a batch."""
        ...

    async def list_attempts(self) -> list[UploadAttemptRecord]:
        """Return all attempt records."""
        ...

    async def record_retry(
        self,
        batch_id: str,
        *,
        error_code: UploadErrorCode,
        error_message: str | None,
        backoff_seconds: float,
        next_retry_at: datetime,
    ) -> int:
        """Record a failed attempt and return the new attempt count."""
        ...

    async def delete_attempt(self, batch_id: str) -> None:
        """Delete the attempt record of a batch."""
        ...

    async def delete_all(self) -> int:
        """Delete every attempt record."""
        ...

    async def prune_missing(self, existing_batch_ids: Iterable[str]) -> int:
        """Delete records whose batch no longer exists."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
