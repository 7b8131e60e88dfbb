"""Pydantic models for telemetry spool configuration."""

from pathlib import Path

from pydantic import BaseModel, Field

from telemetry_spool.const import (
    DEFAULT_API_KEY_HEADER,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_CONNECTIVITY_CHECK_INTERVAL_SECONDS,
    DEFAULT_CONTENT_TYPE,
    DEFAULT_INTAKE_URL,
    DEFAULT_LOW_BATTERY_THRESHOLD,
    DEFAULT_MAX_BATCH_AGE_SECONDS,
    DEFAULT_MAX_BATCH_SIZE_BYTES,
    DEFAULT_MAX_CONCURRENT_UPLOADS,
    DEFAULT_MAX_RETENTION_SECONDS,
    DEFAULT_MIN_FREE_DISK_BYTES,
    DEFAULT_STORAGE_LIMIT_BYTES,
    DEFAULT_SUBMIT_TIMEOUT_SECONDS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    DEFAULT_UPLOAD_TIMEOUT_SECONDS,
)
from telemetry_spool.helpers import get_spool_dir_path, get_state_db_path
from telemetry_spool.models import ConsentState


class SpoolConfig(BaseModel):
    """Configuration options for a telemetry spool instance.

    Attributes:
        spool_dir: directory holding the batch files.
        state_db_path: SQLite database holding upload attempt bookkeeping.
        intake_url: endpoint batches are POSTed to.
        api_key: optional key sent with each upload.
        api_key_header: header name carrying the api key.
        content_type: content type of upload bodies.
        max_batch_size_bytes: payload bytes after which a batch is rotated.
        max_batch_age_seconds: age after which the open batch is rotated.
        max_retention_seconds: age after which a closed batch is evicted.
        storage_limit_bytes: cap on bytes on disk, None for unlimited.
        min_free_disk_bytes: free space to keep available on the filesystem.
        tick_interval_seconds: cadence of the upload scheduler.
        max_concurrent_uploads: number of batches uploaded at the same time.
        upload_timeout_seconds: bound on a single upload attempt.
        backoff_base_seconds: delay after the first retryable failure.
        backoff_max_seconds: upper bound of the retry delay.
        backoff_jitter: random extra fraction of the delay, in [0, 1).
        low_battery_threshold: battery level below which uploads wait for
            charging.
        connectivity_check_interval_seconds: cadence of reachability probes.
        submit_timeout_seconds: how long a submitting thread waits for
            durability.
        initial_consent: consent state at startup.
        log_level: verbosity of the diagnostic log channel.
    """

    spool_dir: Path = Field(default_factory=get_spool_dir_path)
    state_db_path: Path = Field(default_factory=get_state_db_path)
    intake_url: str = DEFAULT_INTAKE_URL
    api_key: str | None = None
    api_key_header: str = DEFAULT_API_KEY_HEADER
    content_type: str = DEFAULT_CONTENT_TYPE
    max_batch_size_bytes: int = Field(default=DEFAULT_MAX_BATCH_SIZE_BYTES, gt=0)
    max_batch_age_seconds: float = Field(default=DEFAULT_MAX_BATCH_AGE_SECONDS, gt=0)
    max_retention_seconds: float = Field(default=DEFAULT_MAX_RETENTION_SECONDS, gt=0)
    storage_limit_bytes: int | None = Field(default=DEFAULT_STORAGE_LIMIT_BYTES, gt=0)
    min_free_disk_bytes: int = Field(default=DEFAULT_MIN_FREE_DISK_BYTES, ge=0)
    tick_interval_seconds: float = Field(default=DEFAULT_TICK_INTERVAL_SECONDS, gt=0)
    max_concurrent_uploads: int = Field(default=DEFAULT_MAX_CONCURRENT_UPLOADS, ge=1)
    upload_timeout_seconds: float = Field(
        default=DEFAULT_UPLOAD_TIMEOUT_SECONDS, gt=0
    )
    backoff_base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, gt=0)
    backoff_max_seconds: float = Field(default=DEFAULT_BACKOFF_MAX_SECONDS, gt=0)
    backoff_jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0, lt=1)
    low_battery_threshold: float = Field(
        default=DEFAULT_LOW_BATTERY_THRESHOLD, ge=0, le=1
    )
    connectivity_check_interval_seconds: float = Field(
        default=DEFAULT_CONNECTIVITY_CHECK_INTERVAL_SECONDS, gt=0
    )
    submit_timeout_seconds: float = Field(
        default=DEFAULT_SUBMIT_TIMEOUT_SECONDS, gt=0
    )
    initial_consent: ConsentState = ConsentState.PENDING
    log_level: str = "INFO"
