"""Upload scheduler driving batches from disk to the intake.

The scheduler runs on its own timer. Each tick closes the open batch when
it is too old, evicts expired batches, checks consent, network and power
conditions, and dispatches eligible batches to the uploader up to a small
concurrency cap. Upload failures never reach the host application: they
are logged and turned into backoff or batch drops.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from telemetry_spool.connection_management.connection_manager import (
    ConnectionManager,
    StaticConnection,
)
from telemetry_spool.connection_management.power_monitor import PowerMonitor
from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.errors import ConsentViolation
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import (
    ConsentState,
    OutcomeKind,
    SchedulerState,
    UploadErrorCode,
    UploadOutcome,
)
from telemetry_spool.state_management.state_manager import StateManager
from telemetry_spool.storage.batch_store import BatchLease, BatchStore
from telemetry_spool.storage.batch_writer import BatchWriter

from .backoff import BackoffPolicy
from .uploader import Uploader

logger = logging.getLogger(__name__)


class UploadScheduler:
    """Decide when batches are uploaded and apply the outcome.

    At most one attempt is in flight per batch; distinct batches upload
    concurrently up to ``max_concurrent_uploads``.
    """

    def __init__(
        self,
        *,
        store: BatchStore,
        writer: BatchWriter,
        consent: ConsentGate,
        state_manager: StateManager,
        uploader: Uploader,
        connection: ConnectionManager | StaticConnection,
        power: PowerMonitor,
        endpoint: str,
        backoff: BackoffPolicy,
        max_concurrent_uploads: int,
        max_retention_seconds: float,
        tick_interval_seconds: float,
        low_battery_threshold: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the upload scheduler.

        Args:
            store: Batch store holding the closed batches.
            writer: Batch writer, asked to close its open batch when too old.
            consent: Consent gate checked before every send.
            state_manager: Persistence of attempt counts and retry times.
            uploader: Performs single upload attempts.
            connection: Network reachability provider.
            power: Power source provider.
            endpoint: Intake URL.
            backoff: Retry delay policy.
            max_concurrent_uploads: Upper bound of attempts in flight.
            max_retention_seconds: Age after which batches are evicted.
            tick_interval_seconds: Time between two ticks.
            low_battery_threshold: Minimum charge to upload on battery.
            clock: Wall clock returning epoch seconds.
        """
        self._store = store
        self._writer = writer
        self._consent = consent
        self._state_manager = state_manager
        self._uploader = uploader
        self._connection = connection
        self._power = power
        self._endpoint = endpoint
        self._backoff = backoff
        self._max_concurrent_uploads = max_concurrent_uploads
        self._max_retention_seconds = max_retention_seconds
        self._tick_interval_seconds = tick_interval_seconds
        self._low_battery_threshold = low_battery_threshold
        self._clock = clock

        self._state = SchedulerState.IDLE
        self._in_flight: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, int] = {}
        self._next_retry_at: dict[str, float] = {}
        self._last_backoff: dict[str, float] = {}

        self._stopped = True
        self._tick_task: asyncio.Task | None = None
        self._wake = asyncio.Event()

        self._emitter = get_emitter()
        self._emitter.on(Emitter.CONSENT_CHANGED, self._on_consent_changed)
        self._emitter.on(Emitter.BATCH_DELETED, self._on_batch_deleted)
        self._emitter.on(Emitter.STORE_PURGED, self._on_store_purged)
        self._emitter.on(Emitter.IS_CONNECTED, self._on_is_connected)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        """Current state of the scheduler."""
        return self._state

    @property
    def in_flight_batch_ids(self) -> list[str]:
        """Ids of the batches currently being uploaded."""
        return sorted(self._in_flight)

    def attempts_for(self, batch_id: str) -> int:
        """Number of failed attempts recorded for a batch."""
        return self._attempts.get(batch_id, 0)

    def next_retry_at(self, batch_id: str) -> float | None:
        """Earliest next attempt of a batch as epoch seconds."""
        return self._next_retry_at.get(batch_id)

    def last_backoff_seconds(self, batch_id: str) -> float | None:
        """Delay applied after the last failure of a batch."""
        return self._last_backoff.get(batch_id)

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def _on_consent_changed(
        self, previous: ConsentState, current: ConsentState
    ) -> None:
        """Handle CONSENT_CHANGED event.

        Withdrawn consent cancels every in-flight attempt before the purge
        starts. Granted consent wakes the tick loop so held batches go out.
        """
        if current == ConsentState.NOT_GRANTED:
            if self._in_flight:
                logger.info(
                    "Consent withdrawn, cancelling %s in-flight uploads",
                    len(self._in_flight),
                )
            for task in self._in_flight.values():
                task.cancel()
        elif current == ConsentState.GRANTED:
            self._wake.set()

    def _on_batch_deleted(self, batch_id: str, reason: str) -> None:
        """Handle BATCH_DELETED event - forget retry bookkeeping."""
        self._forget(batch_id)

    def _on_store_purged(self, deleted_count: int) -> None:
        """Handle STORE_PURGED event - forget all retry bookkeeping."""
        self._attempts.clear()
        self._next_retry_at.clear()
        self._last_backoff.clear()

    def _on_is_connected(self, is_connected: bool) -> None:
        """Handle IS_CONNECTED event - tick now when the network returns."""
        if is_connected:
            self._wake.set()

    def _forget(self, batch_id: str) -> None:
        self._attempts.pop(batch_id, None)
        self._next_retry_at.pop(batch_id, None)
        self._last_backoff.pop(batch_id, None)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: SchedulerState) -> None:
        if state != self._state:
            logger.debug("Scheduler %s -> %s", self._state.value, state.value)
            self._state = state

    def _settle_state(self) -> None:
        """Pick the resting state once dispatching or an attempt is over."""
        if self._in_flight:
            self._set_state(SchedulerState.UPLOADING)
            return
        now = self._clock()
        if any(retry_at > now for retry_at in self._next_retry_at.values()):
            self._set_state(SchedulerState.BACKOFF)
        else:
            self._set_state(SchedulerState.IDLE)

    def _conditions_met(self) -> bool:
        """Check network reachability and power state."""
        if not self._connection.is_connected():
            logger.debug("Upload deferred: network unreachable")
            return False
        battery = self._power.battery_state()
        if battery.charging or battery.level is None:
            return True
        if battery.level > self._low_battery_threshold:
            return True
        logger.debug("Upload deferred: battery low (%.0f%%)", battery.level * 100)
        return False

    def _eligible_batch_ids(self, now: float) -> list[str]:
        return [
            batch_id
            for batch_id in self._store.list_pending_batch_ids()
            if batch_id not in self._in_flight
            and self._next_retry_at.get(batch_id, 0.0) <= now
        ]

    async def tick(self) -> int:
        """Run one scheduler cycle.

        Returns:
            Number of uploads dispatched by this tick.
        """
        now = self._clock()
        await self._writer.close_if_expired(now)
        await self._store.evict_expired(now, self._max_retention_seconds)

        if not self._in_flight:
            self._set_state(SchedulerState.WAITING_FOR_CONDITIONS)

        if not self._consent.allows_upload():
            logger.debug(
                "Upload deferred: consent is %s", self._consent.current_state().value
            )
            self._settle_state()
            return 0
        if not self._conditions_met():
            self._settle_state()
            return 0

        dispatched = 0
        for batch_id in self._eligible_batch_ids(now):
            if len(self._in_flight) >= self._max_concurrent_uploads:
                break
            self._dispatch(batch_id)
            dispatched += 1

        self._settle_state()
        return dispatched

    def _dispatch(self, batch_id: str) -> None:
        task = asyncio.create_task(
            self._upload_batch(batch_id), name=f"upload-{batch_id}"
        )
        self._in_flight[batch_id] = task
        task.add_done_callback(lambda _task: self._on_upload_done(batch_id, _task))
        self._set_state(SchedulerState.UPLOADING)

    def _on_upload_done(self, batch_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(batch_id) is task:
            del self._in_flight[batch_id]
        self._settle_state()

    # -------------------------------------------------------------------------
    # Upload attempts
    # -------------------------------------------------------------------------

    async def _upload_batch(self, batch_id: str) -> None:
        """Borrow a batch, send it once and apply the outcome."""
        try:
            async with self._store.checkout(batch_id) as lease:
                if lease is None:
                    logger.debug("Batch %s disappeared before upload", batch_id)
                    return
                try:
                    self._check_consent()
                except ConsentViolation as e:
                    logger.error("Dropping batch %s: %s", batch_id, e)
                    await self._drop(lease, UploadErrorCode.CONSENT_VIOLATION, str(e))
                    return
                if not self._consent.allows_upload():
                    return

                outcome = await self._uploader.upload(lease.batch, self._endpoint)
                await self._handle_outcome(lease, outcome)
        except asyncio.CancelledError:
            logger.info("Upload of batch %s cancelled, batch retained", batch_id)
            raise
        except Exception:
            logger.exception("Unexpected error uploading batch %s", batch_id)

    def _check_consent(self) -> None:
        """Raise if a send would happen while consent is not granted."""
        if self._consent.current_state() == ConsentState.NOT_GRANTED:
            raise ConsentViolation("Send attempted while consent is not granted")

    async def _handle_outcome(self, lease: BatchLease, outcome: UploadOutcome) -> None:
        batch_id = lease.batch.batch_id

        if outcome.is_success:
            await lease.delete(reason="uploaded")
            logger.info(
                "Uploaded batch %s (%s events, %s bytes)",
                batch_id,
                len(lease.batch.events),
                lease.batch.total_size_bytes,
            )
            self._emitter.emit(Emitter.UPLOAD_COMPLETE, batch_id)
            return

        error_code = outcome.error_code or UploadErrorCode.UNKNOWN
        if outcome.kind == OutcomeKind.RETRYABLE_FAILURE:
            await self._schedule_retry(batch_id, error_code, outcome.reason)
            return

        logger.warning(
            "Batch %s rejected by the intake, dropping it: %s",
            batch_id,
            outcome.reason,
        )
        await self._drop(lease, error_code, outcome.reason)

    async def _schedule_retry(
        self, batch_id: str, error_code: UploadErrorCode, reason: str | None
    ) -> None:
        attempts = self._attempts.get(batch_id, 0) + 1
        backoff_seconds = self._backoff.delay(attempts)
        next_retry_at = self._clock() + backoff_seconds

        self._attempts[batch_id] = attempts
        self._next_retry_at[batch_id] = next_retry_at
        self._last_backoff[batch_id] = backoff_seconds

        logger.warning(
            "Upload of batch %s failed (attempt %s), retrying in %.1fs: %s",
            batch_id,
            attempts,
            backoff_seconds,
            reason,
        )
        self._emitter.emit(
            Emitter.UPLOAD_FAILED,
            batch_id,
            attempts,
            error_code,
            reason,
            backoff_seconds,
        )
        await self._state_manager.record_retry(
            batch_id,
            error_code=error_code,
            error_message=reason,
            backoff_seconds=backoff_seconds,
            next_retry_at=next_retry_at,
        )

    async def _drop(
        self, lease: BatchLease, error_code: UploadErrorCode, reason: str | None
    ) -> None:
        batch_id = lease.batch.batch_id
        await lease.delete(reason="dropped")
        self._emitter.emit(Emitter.BATCH_DROPPED, batch_id, error_code, reason)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def load_retry_schedule(self) -> None:
        """Restore attempt counts from the state store.

        Records of batches that no longer exist on disk are pruned first.
        """
        await self._state_manager.prune_missing(self._store.list_pending_batch_ids())
        schedule = await self._state_manager.load_retry_schedule()
        for batch_id, (attempts, next_retry_at) in schedule.items():
            self._attempts[batch_id] = attempts
            if next_retry_at is not None:
                self._next_retry_at[batch_id] = next_retry_at
        if schedule:
            logger.info("Restored retry state for %s batches", len(schedule))

    async def start(self) -> None:
        """Restore retry state and start the tick loop."""
        if not self._stopped:
            return
        await self.load_retry_schedule()
        self._stopped = False
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "UploadScheduler started (tick=%ss, concurrency=%s)",
            self._tick_interval_seconds,
            self._max_concurrent_uploads,
        )

    async def _tick_loop(self) -> None:
        while not self._stopped:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in upload scheduler tick: {e}", exc_info=True)

            self._wake.clear()
            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self._tick_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def wait_for_uploads(self) -> None:
        """Wait until every in-flight attempt has finished."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def stop(self, cancel_in_flight: bool = True) -> None:
        """Stop the tick loop.

        Args:
            cancel_in_flight: Cancel running attempts (their batches are
                kept) instead of waiting for them.
        """
        self._stopped = True
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None

        if cancel_in_flight:
            for task in self._in_flight.values():
                task.cancel()
        await self.wait_for_uploads()
        self._set_state(SchedulerState.IDLE)
        logger.info("UploadScheduler stopped")

    def close(self) -> None:
        """Stop listening for events."""
        self._emitter.remove_listener(Emitter.CONSENT_CHANGED, self._on_consent_changed)
        self._emitter.remove_listener(Emitter.BATCH_DELETED, self._on_batch_deleted)
        self._emitter.remove_listener(Emitter.STORE_PURGED, self._on_store_purged)
        self._emitter.remove_listener(Emitter.IS_CONNECTED, self._on_is_connected)
