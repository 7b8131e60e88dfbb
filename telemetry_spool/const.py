"""Constants for the telemetry spool."""

import struct
from pathlib import Path

# created_at as float64 epoch seconds, uint32 payload length
EVENT_HEADER_FORMAT = "!dI"
EVENT_HEADER_SIZE = struct.calcsize(EVENT_HEADER_FORMAT)
MAX_EVENT_PAYLOAD_BYTES = 2**32 - 1

OPEN_BATCH_SUFFIX = ".open"
CLOSED_BATCH_SUFFIX = ".batch"
BATCH_ID_WIDTH = 20

CONFIG_DIR = Path.home() / ".telemetry_spool"
DEFAULT_SPOOL_DIR = CONFIG_DIR / "spool"
DEFAULT_STATE_DB_PATH = CONFIG_DIR / "state.db"

ENV_SPOOL_DIR = "TSPOOL_SPOOL_DIR"
ENV_STATE_DB_PATH = "TSPOOL_STATE_DB_PATH"

BYTES_PER_KIB = 1024
BYTES_PER_MIB = 1024 * 1024
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR

DEFAULT_INTAKE_URL = "http://localhost:8126/v1/input"
DEFAULT_CONTENT_TYPE = "application/x-ndjson"
DEFAULT_API_KEY_HEADER = "X-Api-Key"

DEFAULT_MAX_BATCH_SIZE_BYTES = 512 * BYTES_PER_KIB
DEFAULT_MAX_BATCH_AGE_SECONDS = 15.0
DEFAULT_MAX_RETENTION_SECONDS = 18 * SECONDS_PER_HOUR
DEFAULT_STORAGE_LIMIT_BYTES = 512 * BYTES_PER_MIB
DEFAULT_MIN_FREE_DISK_BYTES = 64 * BYTES_PER_MIB

DEFAULT_TICK_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_CONCURRENT_UPLOADS = 2
DEFAULT_UPLOAD_TIMEOUT_SECONDS = 30.0
DEFAULT_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_BACKOFF_MAX_SECONDS = 10 * SECONDS_PER_MINUTE
DEFAULT_BACKOFF_JITTER = 0.5

DEFAULT_LOW_BATTERY_THRESHOLD = 0.1
DEFAULT_CONNECTIVITY_CHECK_INTERVAL_SECONDS = 10.0
DEFAULT_CONNECTIVITY_TIMEOUT_SECONDS = 5.0
DEFAULT_SUBMIT_TIMEOUT_SECONDS = 5.0

POWER_SUPPLY_ROOT = Path("/sys/class/power_supply")
