"""Handles naming, ordering and directory durability of batch files."""

from __future__ import annotations

import asyncio
import os
import pathlib

from telemetry_spool.const import (
    BATCH_ID_WIDTH,
    CLOSED_BATCH_SUFFIX,
    OPEN_BATCH_SUFFIX,
)


def batch_created_at(batch_id: str) -> float:
    """Return the creation time (epoch seconds) encoded in a batch id.

    Args:
        batch_id: Batch identifier.

    Returns:
        Creation time as epoch seconds.

    Raises:
        ValueError: If the id is not a batch id.
    """
    return int(batch_id) / 1_000_000_000


def is_batch_id(name: str) -> bool:
    """Return True if ``name`` is a well-formed batch id."""
    return len(name) == BATCH_ID_WIDTH and name.isdigit()


class _BatchFilesystem:
    """Resolve batch file paths inside the spool directory.

    Batch ids are zero-padded nanosecond creation timestamps, so sorting ids
    lexicographically yields creation order, also after a restart.
    """

    def __init__(self, spool_dir: pathlib.Path) -> None:
        """Initialise _BatchFilesystem.

        Args:
            spool_dir: Directory holding the batch files.
        """
        self.spool_dir = spool_dir
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        existing = self.list_open_ids() + self.list_closed_ids()
        self._last_id_ns = max((int(batch_id) for batch_id in existing), default=0)

    def new_batch_id(self, now: float) -> str:
        """Allocate a batch id for a batch created at ``now``.

        Ids are strictly increasing even if the clock stalls or steps back.

        Args:
            now: Creation time as epoch seconds.

        Returns:
            New batch id.
        """
        id_ns = max(int(now * 1_000_000_000), self._last_id_ns + 1)
        self._last_id_ns = id_ns
        return f"{id_ns:0{BATCH_ID_WIDTH}d}"

    def open_path(self, batch_id: str) -> pathlib.Path:
        """Path of a batch while it receives appends."""
        return self.spool_dir / f"{batch_id}{OPEN_BATCH_SUFFIX}"

    def closed_path(self, batch_id: str) -> pathlib.Path:
        """Path of a batch once rotated out."""
        return self.spool_dir / f"{batch_id}{CLOSED_BATCH_SUFFIX}"

    def _list_ids(self, suffix: str) -> list[str]:
        if not self.spool_dir.exists():
            return []
        return sorted(
            path.stem
            for path in self.spool_dir.iterdir()
            if path.suffix == suffix and is_batch_id(path.stem)
        )

    def list_open_ids(self) -> list[str]:
        """Ids of open batch files, oldest first."""
        return self._list_ids(OPEN_BATCH_SUFFIX)

    def list_closed_ids(self) -> list[str]:
        """Ids of closed batch files, oldest first."""
        return self._list_ids(CLOSED_BATCH_SUFFIX)

    def _fsync_dir_sync(self) -> None:
        fd = os.open(self.spool_dir, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    async def fsync_dir(self) -> None:
        """Persist directory entries (file creation, rename, removal)."""
        if os.name == "nt":
            return
        await asyncio.to_thread(self._fsync_dir_sync)
