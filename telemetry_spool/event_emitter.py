"""Shared event emitter for cross-component signaling."""

import asyncio
import logging
from typing import Any

from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)


class Emitter(AsyncIOEventEmitter):
    """Shared event emitter for cross-component signaling."""

    # Consent gate -> Upload scheduler
    CONSENT_CHANGED = "CONSENT_CHANGED"
    # (previous: ConsentState, current: ConsentState)

    # Batch store -> Upload scheduler
    BATCH_CLOSED = "BATCH_CLOSED"
    # (batch_id, total_size_bytes, event_count)

    # Batch store -> State manager
    BATCH_DELETED = "BATCH_DELETED"
    # (batch_id, reason)

    # Batch store -> Batch writer
    STORE_PURGED = "STORE_PURGED"
    # (deleted_count)

    # Connection manager -> Upload scheduler
    IS_CONNECTED = "IS_CONNECTED"
    # (is_connected: bool)

    # Upload scheduler -> observers
    UPLOAD_COMPLETE = "UPLOAD_COMPLETE"
    # (batch_id)

    # Upload scheduler -> observers
    UPLOAD_FAILED = "UPLOAD_FAILED"
    # (batch_id, attempts, error_code, error_message, backoff_seconds)

    # Upload scheduler -> observers
    BATCH_DROPPED = "BATCH_DROPPED"
    # (batch_id, error_code, error_message)

    # Batch writer -> observers
    EVENT_DROPPED = "EVENT_DROPPED"
    # (reason, size_bytes)

    def __init__(self, *, loop: asyncio.AbstractEventLoop) -> None:
        """Initialize the event emitter.

        Args:
            loop: The event loop to use for async event handlers.
        """
        super().__init__(loop=loop)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> bool:
        """Emit an event with logging.

        Args:
            event: The event name to emit.
            *args: Positional arguments to pass to handlers.
            **kwargs: Keyword arguments to pass to handlers.

        Returns:
            True if the event had listeners, False otherwise.
        """
        formatted_args = []
        for arg in args:
            if isinstance(arg, str) and len(arg) > 50:
                formatted_args.append(f"{arg[:50]}...")
            elif isinstance(arg, bytes) and len(arg) > 20:
                formatted_args.append(f"<{len(arg)} bytes>")
            else:
                r = repr(arg)
                if len(r) > 100:
                    formatted_args.append(f"{r[:100]}...")
                else:
                    formatted_args.append(r)
        args_str = ", ".join(formatted_args) if formatted_args else ""
        logger.debug("EVENT %s: %s", event, args_str)
        return super().emit(event, *args, **kwargs)


_emitter: Emitter | None = None


def init_emitter(*, loop: asyncio.AbstractEventLoop) -> Emitter:
    """Initialize the global emitter once the spool loop is running.

    Args:
        loop: The event loop to use for async event handlers.

    """
    global _emitter
    if _emitter is not None:
        raise RuntimeError("Emitter already initialized")
    _emitter = Emitter(loop=loop)
    return _emitter


def get_emitter() -> Emitter:
    """Return the initialized emitter."""
    if _emitter is None:
        raise RuntimeError("Emitter not initialized.")
    return _emitter


def reset_emitter() -> None:
    """Drop the global emitter so a new loop can initialise its own."""
    global _emitter
    if _emitter is not None:
        _emitter.remove_all_listeners()
    _emitter = None
