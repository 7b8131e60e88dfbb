"""Helper functions for the telemetry spool."""

import os
from pathlib import Path

from telemetry_spool.const import (
    DEFAULT_SPOOL_DIR,
    DEFAULT_STATE_DB_PATH,
    ENV_SPOOL_DIR,
    ENV_STATE_DB_PATH,
)


def get_spool_dir_path() -> Path:
    """Return the directory where batch files are stored.

    This path is determined by the environment variable TSPOOL_SPOOL_DIR.
    If this variable is not set, the path defaults to
    ~/.telemetry_spool/spool.

    :return: Path to the spool directory
    """
    return Path(os.environ.get(ENV_SPOOL_DIR, str(DEFAULT_SPOOL_DIR)))


def get_state_db_path() -> Path:
    """Return the path to the SQLite database holding upload attempt state.

    This path is determined by the environment variable TSPOOL_STATE_DB_PATH.
    If this variable is not set, the path defaults to
    ~/.telemetry_spool/state.db.

    :return: Path to the SQLite database file
    """
    return Path(os.environ.get(ENV_STATE_DB_PATH, str(DEFAULT_STATE_DB_PATH)))
