"""Models used by the spool."""

import struct
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from telemetry_spool.const import (
    EVENT_HEADER_FORMAT,
    EVENT_HEADER_SIZE,
    MAX_EVENT_PAYLOAD_BYTES,
)


class ConsentState(str, Enum):
    """Data collection consent granted by the end user.

    State transitions:
    - PENDING -> GRANTED: held batches become uploadable, nothing is lost
    - Any -> NOT_GRANTED: every stored batch is purged, new events dropped
    - Any -> PENDING: buffering resumes, nothing is sent
    """

    PENDING = "pending"
    GRANTED = "granted"
    NOT_GRANTED = "not_granted"


class SchedulerState(str, Enum):
    """Lifecycle states of the upload scheduler.

    State transitions:
    - IDLE -> WAITING_FOR_CONDITIONS (timer tick)
    - WAITING_FOR_CONDITIONS -> UPLOADING (conditions met, batches eligible)
    - WAITING_FOR_CONDITIONS -> IDLE (conditions not met)
    - UPLOADING -> IDLE (success or non-retryable failure)
    - UPLOADING -> BACKOFF (retryable failure)
    """

    IDLE = "idle"
    WAITING_FOR_CONDITIONS = "waiting_for_conditions"
    UPLOADING = "uploading"
    BACKOFF = "backoff"


class OutcomeKind(str, Enum):
    """Classification of a single upload attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    NON_RETRYABLE_FAILURE = "non_retryable_failure"


class UploadErrorCode(str, Enum):
    """Standardized error codes for failed upload attempts."""

    UNKNOWN = "unknown"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    CONSENT_VIOLATION = "consent_violation"


@dataclass(frozen=True)
class EventRecord:
    """A single serialized telemetry event.

    Attributes:
        payload: Opaque encoded event (span, log line, ...).
        created_at: Capture time as epoch seconds.
    """

    payload: bytes
    created_at: float

    def __post_init__(self) -> None:
        """Validate the payload fits a frame."""
        if not isinstance(self.payload, (bytes, bytearray)):
            raise TypeError(
                f"payload must be bytes, got {type(self.payload).__name__}"
            )
        if len(self.payload) > MAX_EVENT_PAYLOAD_BYTES:
            raise ValueError(f"payload too large: {len(self.payload)} bytes")

    @classmethod
    def create(cls, payload: bytes, created_at: float | None = None) -> "EventRecord":
        """Build an event stamped with the current wall clock."""
        return cls(
            payload=bytes(payload),
            created_at=time.time() if created_at is None else created_at,
        )

    @property
    def size_bytes(self) -> int:
        """Size of the payload in bytes."""
        return len(self.payload)

    def to_frame(self) -> bytes:
        """Encode the event as an on-disk frame (header + payload)."""
        header = struct.pack(EVENT_HEADER_FORMAT, self.created_at, self.size_bytes)
        return header + self.payload

    @staticmethod
    def frame_size(payload_size: int) -> int:
        """Return the on-disk size of a frame holding ``payload_size`` bytes."""
        return EVENT_HEADER_SIZE + payload_size


def decode_frames(data: bytes) -> tuple[list[EventRecord], int]:
    """Decode consecutive frames from raw batch file contents.

    A trailing partial frame, left by a crash in the middle of a write, is
    ignored.

    Args:
        data: Raw bytes of a batch file.

    Returns:
        Tuple of (events, number of bytes consumed by complete frames).
    """
    events: list[EventRecord] = []
    offset = 0
    total = len(data)
    while offset + EVENT_HEADER_SIZE <= total:
        created_at, payload_len = struct.unpack_from(EVENT_HEADER_FORMAT, data, offset)
        payload_start = offset + EVENT_HEADER_SIZE
        payload_end = payload_start + payload_len
        if payload_end > total:
            break
        events.append(
            EventRecord(payload=data[payload_start:payload_end], created_at=created_at)
        )
        offset = payload_end
    return events, offset


@dataclass(frozen=True)
class Batch:
    """An ordered group of events, the unit of upload and deletion.

    Attributes:
        batch_id: Identifier derived from the creation time.
        created_at: Creation time as epoch seconds.
        events: Events in capture order.
    """

    batch_id: str
    created_at: float
    events: tuple[EventRecord, ...]

    @property
    def total_size_bytes(self) -> int:
        """Sum of the payload sizes of all events."""
        return sum(event.size_bytes for event in self.events)

    def serialize(self) -> bytes:
        """Return the request body: payloads joined by newlines."""
        return b"\n".join(event.payload for event in self.events)


@dataclass(frozen=True)
class UploadOutcome:
    """Result of a single upload attempt."""

    kind: OutcomeKind
    reason: str | None = None
    status_code: int | None = None
    error_code: UploadErrorCode | None = None

    @classmethod
    def success(cls, status_code: int | None = None) -> "UploadOutcome":
        """Build a successful outcome."""
        return cls(kind=OutcomeKind.SUCCESS, status_code=status_code)

    @classmethod
    def retryable(
        cls,
        reason: str,
        error_code: UploadErrorCode = UploadErrorCode.NETWORK_ERROR,
        status_code: int | None = None,
    ) -> "UploadOutcome":
        """Build a transient failure outcome."""
        return cls(
            kind=OutcomeKind.RETRYABLE_FAILURE,
            reason=reason,
            status_code=status_code,
            error_code=error_code,
        )

    @classmethod
    def non_retryable(
        cls,
        reason: str,
        error_code: UploadErrorCode = UploadErrorCode.REJECTED,
        status_code: int | None = None,
    ) -> "UploadOutcome":
        """Build a permanent failure outcome."""
        return cls(
            kind=OutcomeKind.NON_RETRYABLE_FAILURE,
            reason=reason,
            status_code=status_code,
            error_code=error_code,
        )

    @property
    def is_success(self) -> bool:
        """Whether the intake accepted the batch."""
        return self.kind == OutcomeKind.SUCCESS


@dataclass(frozen=True)
class BatteryState:
    """Power source snapshot.

    Attributes:
        charging: True when on external power (or no battery present).
        level: Charge level in [0, 1], or None when unknown.
    """

    charging: bool
    level: float | None = None


@dataclass(frozen=True)
class UploadAttemptRecord:
    """Typed representation of an upload attempt row in the state store."""

    batch_id: str
    attempts: int
    next_retry_at: datetime | None
    last_error_code: UploadErrorCode | None
    last_error_message: str | None
    last_backoff_seconds: float | None
    created_at: datetime
    last_updated: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UploadAttemptRecord":
        """Build an UploadAttemptRecord from a SQLAlchemy mapping row."""
        error_code_raw = row.get("last_error_code")
        error_code = (
            error_code_raw
            if error_code_raw is None or isinstance(error_code_raw, UploadErrorCode)
            else UploadErrorCode(str(error_code_raw))
        )
        backoff_raw = row.get("last_backoff_seconds")
        return cls(
            batch_id=str(row["batch_id"]),
            attempts=int(row.get("attempts") or 0),
            next_retry_at=row.get("next_retry_at"),
            last_error_code=error_code,
            last_error_message=row.get("last_error_message"),
            last_backoff_seconds=None if backoff_raw is None else float(backoff_raw),
            created_at=row["created_at"],
            last_updated=row["last_updated"],
        )
