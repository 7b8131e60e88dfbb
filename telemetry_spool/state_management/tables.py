"""SQLAlchemy table definitions for upload bookkeeping."""

from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
)

from telemetry_spool.models import UploadErrorCode

metadata = MetaData()

upload_attempts = Table(
    "upload_attempts",
    metadata,
    Column("batch_id", Text, primary_key=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("next_retry_at", DateTime(timezone=False), nullable=True, default=None),
    Column(
        "last_error_code",
        Enum(UploadErrorCode, native_enum=False),
        nullable=True,
        default=None,
    ),
    Column("last_error_message", Text, nullable=True, default=None),
    Column("last_backoff_seconds", Float, nullable=True, default=None),
    Column(
        "created_at",
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
    ),
    Column(
        "last_updated",
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
    ),
)

Index("idx_upload_attempts_next_retry_at", upload_attempts.c.next_retry_at)
