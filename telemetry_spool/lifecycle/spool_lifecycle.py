"""Lifecycle helpers for spool startup and shutdown."""

from __future__ import annotations

import logging
import signal
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType

logger = logging.getLogger(__name__)


class SpoolLifecycleError(RuntimeError):
    """Raised when spool lifecycle checks fail."""


def validate_or_recover_sqlite(db_path: Path, *, recover: bool = True) -> bool:
    """Validate SQLite integrity, optionally recover by rotating corrupt DB.

    The database only holds retry bookkeeping, so a corrupt file is moved
    aside and a fresh one is created; no batch is lost.

    Args:
        db_path: Path to the state database.
        recover: Rotate a corrupt database instead of raising.

    Returns:
        True if the database is healthy or absent, False if it was rotated.

    Raises:
        SpoolLifecycleError: If the database is corrupt and recover is False.
    """
    if not db_path.exists():
        return True

    try:
        conn = sqlite3.connect(str(db_path))
        try:
            result = conn.execute("PRAGMA integrity_check").fetchone()
        finally:
            conn.close()
    except sqlite3.DatabaseError as exc:
        logger.error("Failed to open SQLite database: %s", exc)
        result = None

    ok = result is not None and result[0] == "ok"
    if ok:
        return True
    if not recover:
        raise SpoolLifecycleError("SQLite integrity check failed")

    ts = int(time.time())
    corrupt_path = db_path.with_suffix(db_path.suffix + f".corrupt-{ts}")
    db_path.rename(corrupt_path)
    logger.warning("SQLite corruption detected; rotated to %s", corrupt_path)
    return False


def checkpoint_sqlite(db_path: Path) -> None:
    """Checkpoint SQLite WAL to disk."""
    if not db_path.exists():
        return
    try:
        conn = sqlite3.connect(str(db_path))
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        finally:
            conn.close()
    except sqlite3.DatabaseError as exc:
        logger.warning("SQLite checkpoint failed: %s", exc)


def install_signal_handlers(on_shutdown: Callable[[int], None]) -> None:
    """Install SIGINT/SIGTERM handlers that request a graceful shutdown.

    Args:
        on_shutdown: Called with the signal number. Must be thread safe and
            must not block.
    """

    def _handle_shutdown(signum: int, _frame: FrameType | None) -> None:
        logger.info("Received signal %s, shutting down", signum)
        on_shutdown(signum)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)
