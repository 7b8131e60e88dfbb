"""Tests for UploadScheduler dispatching, retries and consent handling."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from telemetry_spool.connection_management.connection_manager import StaticConnection
from telemetry_spool.connection_management.power_monitor import StaticPowerMonitor
from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import (
    Batch,
    ConsentState,
    EventRecord,
    SchedulerState,
    UploadErrorCode,
    UploadOutcome,
)
from telemetry_spool.state_management.state_manager import StateManager
from telemetry_spool.storage.batch_writer import BatchWriter
from telemetry_spool.upload_management.backoff import BackoffPolicy
from telemetry_spool.upload_management.upload_scheduler import UploadScheduler

ENDPOINT = "http://intake.test/v1/input"
RETENTION_SECONDS = 3600.0


class FakeUploader:
    """Answers uploads from per-batch outcome queues, success by default."""

    def __init__(self) -> None:
        self.outcomes: dict[str, list[UploadOutcome]] = {}
        self.calls: list[str] = []
        self.completed: list[str] = []
        self.block = False
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    def queue(self, batch_id: str, *outcomes: UploadOutcome) -> None:
        self.outcomes.setdefault(batch_id, []).extend(outcomes)

    async def upload(self, batch: Batch, endpoint: str) -> UploadOutcome:
        assert endpoint == ENDPOINT
        self.calls.append(batch.batch_id)
        if self.block:
            self.started.set()
            await self.release.wait()
        self.completed.append(batch.batch_id)
        queued = self.outcomes.get(batch.batch_id)
        if queued:
            return queued.pop(0)
        return UploadOutcome.success(200)


def _state_manager() -> MagicMock:
    state_manager = MagicMock(spec=StateManager)
    state_manager.record_retry = AsyncMock(return_value=1)
    state_manager.prune_missing = AsyncMock(return_value=0)
    state_manager.load_retry_schedule = AsyncMock(return_value={})
    return state_manager


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def state_manager() -> MagicMock:
    return _state_manager()


@pytest.fixture
def make_scheduler(store, make_writer, clock, uploader, state_manager):
    """Factory for a scheduler over the shared store and a fake uploader."""

    def _make(
        *,
        consent: ConsentGate | None = None,
        connection: StaticConnection | None = None,
        power: StaticPowerMonitor | None = None,
        max_concurrent_uploads: int = 2,
        writer: BatchWriter | None = None,
    ) -> UploadScheduler:
        consent = consent or ConsentGate(store, ConsentState.GRANTED)
        return UploadScheduler(
            store=store,
            writer=writer or make_writer(),
            consent=consent,
            state_manager=state_manager,
            uploader=uploader,
            connection=connection or StaticConnection(True),
            power=power or StaticPowerMonitor(charging=True),
            endpoint=ENDPOINT,
            backoff=BackoffPolicy(
                base_seconds=1.0, max_seconds=100.0, jitter=0.5, rng=lambda: 0.5
            ),
            max_concurrent_uploads=max_concurrent_uploads,
            max_retention_seconds=RETENTION_SECONDS,
            tick_interval_seconds=60.0,
            low_battery_threshold=0.1,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_batch(make_writer, clock) -> Callable:
    """Write one closed batch and return its id."""
    writer = make_writer()

    async def _make(*payloads: bytes) -> str:
        for payload in payloads or (b"event",):
            assert await writer.append(EventRecord(payload, clock()))
        batch_id = await writer.rotate()
        assert batch_id is not None
        return batch_id

    return _make


async def _tick_and_wait(scheduler: UploadScheduler) -> int:
    dispatched = await scheduler.tick()
    await scheduler.wait_for_uploads()
    return dispatched


@pytest.mark.asyncio
async def test_success_deletes_batch_and_emits_complete(
    make_scheduler, make_batch, store, uploader
):
    batch_id = await make_batch(b"a", b"b")
    scheduler = make_scheduler()
    completed: list[str] = []
    get_emitter().on(Emitter.UPLOAD_COMPLETE, completed.append)

    assert await _tick_and_wait(scheduler) == 1

    assert uploader.completed == [batch_id]
    assert store.list_pending_batch_ids() == []
    assert completed == [batch_id]
    assert scheduler.state == SchedulerState.IDLE
    scheduler.close()


@pytest.mark.asyncio
async def test_retryable_failures_back_off_then_success_resets(
    make_scheduler, make_batch, store, uploader, state_manager, clock
):
    batch_id = await make_batch()
    failure = UploadOutcome.retryable("HTTP 503", UploadErrorCode.SERVER_ERROR, 503)
    uploader.queue(batch_id, failure, failure, failure)
    scheduler = make_scheduler()
    failures: list[tuple] = []
    get_emitter().on(Emitter.UPLOAD_FAILED, lambda *args: failures.append(args))

    backoffs: list[float] = []
    for attempt in range(1, 4):
        assert await _tick_and_wait(scheduler) == 1
        assert scheduler.attempts_for(batch_id) == attempt
        assert scheduler.state == SchedulerState.BACKOFF
        assert store.list_pending_batch_ids() == [batch_id]
        backoff = scheduler.last_backoff_seconds(batch_id)
        backoffs.append(backoff)

        # Not eligible again before the backoff elapsed.
        assert await _tick_and_wait(scheduler) == 0
        clock.advance(backoff)

    assert backoffs == [1.25, 2.5, 5.0]
    assert [args[1] for args in failures] == [1, 2, 3]
    assert failures[0][2] == UploadErrorCode.SERVER_ERROR
    assert state_manager.record_retry.await_count == 3

    assert await _tick_and_wait(scheduler) == 1
    assert store.list_pending_batch_ids() == []
    assert scheduler.attempts_for(batch_id) == 0
    assert scheduler.next_retry_at(batch_id) is None
    assert scheduler.state == SchedulerState.IDLE

    # A new batch starts from the first backoff step again.
    next_batch = await make_batch()
    uploader.queue(next_batch, failure)
    await _tick_and_wait(scheduler)
    assert scheduler.last_backoff_seconds(next_batch) == 1.25
    scheduler.close()


@pytest.mark.asyncio
async def test_retry_is_persisted_with_epoch_schedule(
    make_scheduler, make_batch, uploader, state_manager, clock
):
    batch_id = await make_batch()
    uploader.queue(batch_id, UploadOutcome.retryable("offline"))
    scheduler = make_scheduler()

    await _tick_and_wait(scheduler)

    state_manager.record_retry.assert_awaited_once_with(
        batch_id,
        error_code=UploadErrorCode.NETWORK_ERROR,
        error_message="offline",
        backoff_seconds=1.25,
        next_retry_at=clock() + 1.25,
    )
    scheduler.close()


@pytest.mark.asyncio
async def test_non_retryable_failure_drops_batch(
    make_scheduler, make_batch, store, uploader, state_manager
):
    batch_id = await make_batch()
    uploader.queue(
        batch_id, UploadOutcome.non_retryable("HTTP 400", status_code=400)
    )
    scheduler = make_scheduler()
    dropped: list[tuple] = []
    get_emitter().on(Emitter.BATCH_DROPPED, lambda *args: dropped.append(args))

    await _tick_and_wait(scheduler)

    assert store.list_pending_batch_ids() == []
    assert dropped == [(batch_id, UploadErrorCode.REJECTED, "HTTP 400")]
    state_manager.record_retry.assert_not_awaited()
    assert scheduler.state == SchedulerState.IDLE
    scheduler.close()


@pytest.mark.asyncio
async def test_success_deletes_only_the_uploaded_batch(
    make_scheduler, make_batch, store, uploader
):
    first = await make_batch(b"first")
    second = await make_batch(b"second")
    uploader.queue(second, UploadOutcome.retryable("timeout", UploadErrorCode.TIMEOUT))
    scheduler = make_scheduler()

    assert await _tick_and_wait(scheduler) == 2

    assert store.list_pending_batch_ids() == [second]
    batch = await store.read_batch(second)
    assert [event.payload for event in batch.events] == [b"second"]
    assert scheduler.attempts_for(first) == 0
    assert scheduler.attempts_for(second) == 1
    scheduler.close()


@pytest.mark.asyncio
async def test_offline_defers_uploads(make_scheduler, make_batch, store, uploader):
    batch_id = await make_batch()
    connection = StaticConnection(False)
    scheduler = make_scheduler(connection=connection)

    assert await _tick_and_wait(scheduler) == 0
    assert uploader.calls == []
    assert scheduler.state == SchedulerState.IDLE

    connection.set_connected(True)
    assert await _tick_and_wait(scheduler) == 1
    assert store.list_pending_batch_ids() == []
    assert uploader.completed == [batch_id]
    scheduler.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("charging", "level", "expected"),
    [
        (False, 0.05, 0),
        (False, 0.1, 0),
        (False, 0.5, 1),
        (False, None, 1),
        (True, 0.01, 1),
    ],
)
async def test_power_state_gates_uploads(
    make_scheduler, make_batch, charging, level, expected
):
    await make_batch()
    scheduler = make_scheduler(
        power=StaticPowerMonitor(charging=charging, level=level)
    )

    assert await _tick_and_wait(scheduler) == expected
    scheduler.close()


@pytest.mark.asyncio
async def test_pending_consent_sends_nothing_until_granted(
    make_scheduler, make_batch, store, uploader
):
    consent = ConsentGate(store, ConsentState.PENDING)
    batch_id = await make_batch()
    scheduler = make_scheduler(consent=consent)

    assert await _tick_and_wait(scheduler) == 0
    assert uploader.calls == []
    assert store.list_pending_batch_ids() == [batch_id]

    await consent.set_state(ConsentState.GRANTED)
    assert await _tick_and_wait(scheduler) == 1
    assert uploader.completed == [batch_id]
    scheduler.close()


@pytest.mark.asyncio
async def test_withdrawing_consent_cancels_in_flight_uploads(
    make_scheduler, make_batch, store, uploader
):
    consent = ConsentGate(store, ConsentState.GRANTED)
    await make_batch()
    uploader.block = True
    scheduler = make_scheduler(consent=consent)

    assert await scheduler.tick() == 1
    await uploader.started.wait()

    await consent.set_state(ConsentState.NOT_GRANTED)
    await scheduler.wait_for_uploads()

    assert uploader.completed == []
    assert scheduler.in_flight_batch_ids == []
    assert store.list_pending_batch_ids() == []
    assert store.total_bytes_on_disk() == 0
    scheduler.close()


@pytest.mark.asyncio
async def test_send_under_withdrawn_consent_drops_batch(
    make_scheduler, make_batch, store, uploader
):
    batch_id = await make_batch()
    # Not initialized, so the batch written earlier is still on disk.
    consent = ConsentGate(store, ConsentState.NOT_GRANTED)
    scheduler = make_scheduler(consent=consent)
    dropped: list[tuple] = []
    get_emitter().on(Emitter.BATCH_DROPPED, lambda *args: dropped.append(args))

    await scheduler._upload_batch(batch_id)

    assert uploader.calls == []
    assert store.list_pending_batch_ids() == []
    assert dropped[0][:2] == (batch_id, UploadErrorCode.CONSENT_VIOLATION)
    scheduler.close()


@pytest.mark.asyncio
async def test_concurrency_cap_limits_in_flight_uploads(
    make_scheduler, make_batch, store, uploader
):
    batch_ids = [await make_batch(bytes([65 + i])) for i in range(3)]
    uploader.block = True
    scheduler = make_scheduler(max_concurrent_uploads=2)

    assert await scheduler.tick() == 2
    assert scheduler.in_flight_batch_ids == batch_ids[:2]
    assert scheduler.state == SchedulerState.UPLOADING
    assert await scheduler.tick() == 0

    uploader.release.set()
    await scheduler.wait_for_uploads()
    assert store.list_pending_batch_ids() == batch_ids[2:]

    assert await _tick_and_wait(scheduler) == 1
    assert store.list_pending_batch_ids() == []
    assert sorted(uploader.completed) == batch_ids
    scheduler.close()


@pytest.mark.asyncio
async def test_stop_cancels_attempt_and_keeps_batch(
    make_scheduler, make_batch, store, uploader, state_manager
):
    batch_id = await make_batch()
    uploader.block = True
    scheduler = make_scheduler()

    await scheduler.tick()
    await uploader.started.wait()
    await scheduler.stop(cancel_in_flight=True)

    assert store.list_pending_batch_ids() == [batch_id]
    assert scheduler.attempts_for(batch_id) == 0
    state_manager.record_retry.assert_not_awaited()
    assert scheduler.state == SchedulerState.IDLE
    scheduler.close()


@pytest.mark.asyncio
async def test_tick_evicts_batches_past_retention(
    make_scheduler, make_batch, store, uploader, clock
):
    await make_batch()
    scheduler = make_scheduler(connection=StaticConnection(False))

    clock.advance(RETENTION_SECONDS + 1)
    await _tick_and_wait(scheduler)

    assert store.list_pending_batch_ids() == []
    assert uploader.calls == []
    scheduler.close()


@pytest.mark.asyncio
async def test_tick_closes_expired_open_batch(
    make_scheduler, make_writer, store, clock
):
    writer = make_writer(max_batch_age_seconds=15.0)
    await writer.append(EventRecord(b"late", clock()))
    scheduler = make_scheduler(writer=writer, connection=StaticConnection(False))

    await _tick_and_wait(scheduler)
    assert store.list_pending_batch_ids() == []

    clock.advance(16)
    await _tick_and_wait(scheduler)
    assert len(store.list_pending_batch_ids()) == 1
    assert writer.open_batch_id is None
    scheduler.close()


@pytest.mark.asyncio
async def test_load_retry_schedule_restores_backoff(
    make_scheduler, make_batch, uploader, state_manager, clock
):
    batch_id = await make_batch()
    state_manager.load_retry_schedule.return_value = {batch_id: (2, clock() + 100)}
    scheduler = make_scheduler()

    await scheduler.load_retry_schedule()

    state_manager.prune_missing.assert_awaited_once_with([batch_id])
    assert scheduler.attempts_for(batch_id) == 2
    assert await _tick_and_wait(scheduler) == 0
    assert scheduler.state == SchedulerState.BACKOFF

    clock.advance(100)
    assert await _tick_and_wait(scheduler) == 1
    assert uploader.completed == [batch_id]
    scheduler.close()


@pytest.mark.asyncio
async def test_start_and_stop_run_the_tick_loop(
    make_scheduler, make_batch, store, uploader
):
    batch_id = await make_batch()
    scheduler = make_scheduler()
    done = asyncio.Event()
    get_emitter().on(Emitter.UPLOAD_COMPLETE, lambda _batch_id: done.set())

    await scheduler.start()
    await asyncio.wait_for(done.wait(), timeout=5)
    await scheduler.stop()

    assert uploader.completed == [batch_id]
    assert store.list_pending_batch_ids() == []
    scheduler.close()
