"""Utilities for disk usage tracking and storage cap enforcement."""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock


def scan_used_bytes(root_path: Path) -> int:
    """Scan total bytes used under a directory.

    Args:
        root_path: Directory to scan.

    Returns:
        Total bytes used by files under root_path.
    """
    if not root_path.exists():
        return 0

    total_bytes = 0
    for file_path in root_path.rglob("*"):
        try:
            if file_path.is_file():
                total_bytes += file_path.stat().st_size
        except FileNotFoundError:
            continue
    return total_bytes


def get_free_bytes(path: Path) -> int:
    """Get free bytes for the filesystem that contains the given path.

    Args:
        path: Path on the target filesystem.

    Returns:
        Free bytes available on the filesystem.
    """
    try:
        return shutil.disk_usage(path).free
    except FileNotFoundError:
        path.mkdir(parents=True, exist_ok=True)
        return shutil.disk_usage(path).free


@dataclass(frozen=True)
class StoragePolicy:
    """Storage policy for the spool directory.

    Args:
        storage_limit_bytes: Maximum bytes the spool may keep on disk, None
            for unlimited.
        min_free_disk_bytes: Minimum free bytes to keep available on the
            filesystem.
        refresh_seconds: How frequently to reconcile the used-bytes estimate
            via a scan.
    """

    storage_limit_bytes: int | None
    min_free_disk_bytes: int
    refresh_seconds: float


class StorageBudget:
    """Thread-safe used-bytes tracker for the spool directory.

    Writes and deletes adjust an in-memory estimate; a periodic directory
    scan corrects drift (files removed behind the spool's back, crashes).

    Args:
        spool_dir: Directory whose usage is tracked.
        policy: Storage policy configuration.
    """

    def __init__(self, spool_dir: Path, policy: StoragePolicy) -> None:
        """Initialise a storage budget tracker.

        Args:
            spool_dir: Directory holding the batch files.
            policy: Storage policy configuration for limits and refresh behaviour.
        """
        self._spool_dir = spool_dir
        self._policy = policy
        self._lock = Lock()
        self._used_bytes = scan_used_bytes(spool_dir)
        self._last_refresh = time.monotonic()

    @property
    def policy(self) -> StoragePolicy:
        """Return the storage policy."""
        return self._policy

    @property
    def used_bytes(self) -> int:
        """Return the current used-bytes estimate."""
        with self._lock:
            return self._used_bytes

    def refresh(self, force: bool = False) -> None:
        """Reconcile the used-bytes estimate with a directory scan.

        Args:
            force: Scan even if the last scan is recent.
        """
        now = time.monotonic()
        with self._lock:
            if not force:
                refresh_seconds = self._policy.refresh_seconds
                if refresh_seconds <= 0 or now - self._last_refresh < refresh_seconds:
                    return
            self._used_bytes = scan_used_bytes(self._spool_dir)
            self._last_refresh = now

    def has_free_disk_for_write(self, bytes_to_write: int) -> bool:
        """Check filesystem free space safety margin.

        Args:
            bytes_to_write: Bytes about to be written.

        Returns:
            True if filesystem has enough free bytes after the write plus safety margin.
        """
        free_bytes = get_free_bytes(self._spool_dir)
        return free_bytes >= (bytes_to_write + self._policy.min_free_disk_bytes)

    def fits(self, bytes_to_write: int) -> bool:
        """Check whether a write stays under the storage limit.

        Args:
            bytes_to_write: Bytes about to be written.

        Returns:
            True if the write fits, always True without a limit.
        """
        storage_limit_bytes = self._policy.storage_limit_bytes
        if storage_limit_bytes is None:
            return True

        self.refresh()
        with self._lock:
            return self._used_bytes + bytes_to_write <= storage_limit_bytes

    def record_write(self, bytes_written: int) -> None:
        """Account for bytes appended to a batch file."""
        with self._lock:
            self._used_bytes += bytes_written

    def release(self, bytes_to_release: int) -> None:
        """Account for bytes freed by deleting a batch file."""
        with self._lock:
            self._used_bytes = max(0, self._used_bytes - bytes_to_release)
