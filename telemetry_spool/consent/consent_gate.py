"""Consent gate deciding whether telemetry may be kept and sent."""

from __future__ import annotations

import asyncio
import logging

from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import ConsentState
from telemetry_spool.storage.batch_store import BatchStore

logger = logging.getLogger(__name__)


class ConsentGate:
    """Tracks the data-collection consent state of the process.

    The gate is an explicit object handed to the components that need it.
    Only ``set_state`` mutates it.
    """

    def __init__(
        self, store: BatchStore, initial_state: ConsentState = ConsentState.PENDING
    ) -> None:
        """Initialise ConsentGate.

        Args:
            store: Batch store purged when consent is withdrawn.
            initial_state: Consent state at startup.
        """
        self._store = store
        self._state = ConsentState(initial_state)
        self._transition_lock = asyncio.Lock()
        self._emitter = get_emitter()

    def current_state(self) -> ConsentState:
        """Return the current consent state."""
        return self._state

    def allows_persist(self) -> bool:
        """Whether new events may be written to disk."""
        return self._state != ConsentState.NOT_GRANTED

    def allows_upload(self) -> bool:
        """Whether stored batches may be sent."""
        return self._state == ConsentState.GRANTED

    async def initialize(self) -> None:
        """Apply the initial state to data left by a previous run."""
        if self._state == ConsentState.NOT_GRANTED:
            purged = await self._store.purge_all()
            if purged:
                logger.info("Consent not granted at startup, purged %s batches", purged)

    async def set_state(self, new_state: ConsentState) -> None:
        """Transition to a new consent state.

        Entering NOT_GRANTED cancels in-flight uploads (via CONSENT_CHANGED)
        and deletes every stored batch before returning.

        Args:
            new_state: The consent state to apply.
        """
        new_state = ConsentState(new_state)
        async with self._transition_lock:
            previous = self._state
            if new_state == previous:
                return

            self._state = new_state
            logger.info("Consent changed: %s -> %s", previous.value, new_state.value)
            self._emitter.emit(Emitter.CONSENT_CHANGED, previous, new_state)

            if new_state == ConsentState.NOT_GRANTED:
                purged = await self._store.purge_all()
                logger.info("Consent withdrawn, purged %s batches", purged)
