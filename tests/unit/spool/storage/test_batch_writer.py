"""Tests for BatchWriter rotation, durability and drop handling."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from telemetry_spool.errors import DurabilityFailure
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import ConsentState, EventRecord, decode_frames


def _event(size: int, fill: bytes = b"x", created_at: float = 1.0) -> EventRecord:
    return EventRecord(payload=fill * size, created_at=created_at)


@pytest.mark.asyncio
async def test_append_is_durable_before_returning(make_writer, store, spool_dir: Path):
    writer = make_writer()

    assert await writer.append(_event(10)) is True

    open_path = spool_dir / f"{writer.open_batch_id}.open"
    events, consumed = decode_frames(open_path.read_bytes())
    assert consumed == open_path.stat().st_size
    assert [event.payload for event in events] == [b"x" * 10]
    assert store.list_pending_batch_ids() == []


@pytest.mark.asyncio
async def test_size_rotation_scenario_10_10_30(make_writer, store):
    writer = make_writer(max_batch_size_bytes=25)

    assert await writer.append(_event(10, b"a")) is True
    assert await writer.append(_event(10, b"b")) is True
    assert await writer.append(_event(30, b"c")) is True
    await writer.rotate()

    batches = await store.list_pending_batches()
    assert len(batches) == 2
    first, second = batches
    assert [event.payload for event in first.events] == [b"a" * 10, b"b" * 10]
    assert first.total_size_bytes == 20
    assert [event.payload for event in second.events] == [b"c" * 30]
    assert second.total_size_bytes == 30
    assert first.batch_id < second.batch_id


@pytest.mark.asyncio
async def test_oversized_event_occupies_a_batch_alone(make_writer, store):
    writer = make_writer(max_batch_size_bytes=8)

    assert await writer.append(_event(50)) is True
    assert await writer.append(_event(4)) is True
    await writer.rotate()

    batches = await store.list_pending_batches()
    assert [batch.total_size_bytes for batch in batches] == [50, 4]


@pytest.mark.asyncio
async def test_age_rotation_closes_old_batch_on_next_append(make_writer, store, clock):
    writer = make_writer(max_batch_age_seconds=15.0)

    await writer.append(_event(5))
    first_id = writer.open_batch_id
    clock.advance(16.0)
    await writer.append(_event(5))

    assert store.list_pending_batch_ids() == [first_id]
    assert writer.open_batch_id != first_id


@pytest.mark.asyncio
async def test_close_if_expired_time_boxes_low_volume_batches(
    make_writer, store, clock
):
    writer = make_writer(max_batch_age_seconds=15.0)
    await writer.append(_event(5))

    assert await writer.close_if_expired(clock() + 10.0) is None
    closed_id = await writer.close_if_expired(clock() + 20.0)

    assert closed_id is not None
    assert store.list_pending_batch_ids() == [closed_id]
    assert writer.open_batch_id is None


@pytest.mark.asyncio
async def test_rotate_emits_batch_closed(make_writer):
    writer = make_writer()
    closed: list[tuple[str, int, int]] = []
    get_emitter().on(
        Emitter.BATCH_CLOSED,
        lambda batch_id, size, count: closed.append((batch_id, size, count)),
    )

    await writer.append(_event(3))
    await writer.append(_event(4))
    batch_id = await writer.rotate()

    assert closed == [(batch_id, 7, 2)]


@pytest.mark.asyncio
async def test_rotate_without_open_batch_returns_none(make_writer, store):
    writer = make_writer()

    assert await writer.rotate() is None
    assert store.list_pending_batch_ids() == []


@pytest.mark.asyncio
async def test_every_event_lands_in_exactly_one_batch(make_writer, store):
    writer = make_writer(max_batch_size_bytes=40)
    payloads = [f"event-{index:03d}".encode() * (index % 4 + 1) for index in range(60)]

    for payload in payloads:
        assert await writer.append(EventRecord.create(payload)) is True
    await writer.rotate()

    stored = [
        event.payload
        for batch in await store.list_pending_batches()
        for event in batch.events
    ]
    assert stored == payloads
    for batch in await store.list_pending_batches():
        assert batch.total_size_bytes <= 40 or len(batch.events) == 1


@pytest.mark.asyncio
async def test_append_dropped_when_consent_not_granted(make_writer, consent, store):
    writer = make_writer()
    dropped: list[str] = []
    get_emitter().on(Emitter.EVENT_DROPPED, lambda reason, size: dropped.append(reason))

    await consent.set_state(ConsentState.NOT_GRANTED)

    assert await writer.append(_event(10)) is False
    assert writer.open_batch_id is None
    assert store.total_bytes_on_disk() == 0
    assert dropped == ["consent_not_granted"]


@pytest.mark.asyncio
async def test_durability_failure_drops_event_and_closes_batch(make_writer, store):
    writer = make_writer()
    await writer.append(_event(10))
    first_id = writer.open_batch_id

    with patch.object(
        store, "append_frame", side_effect=DurabilityFailure("disk full", first_id)
    ):
        assert await writer.append(_event(10)) is False

    assert writer.open_batch_id is None
    assert store.list_pending_batch_ids() == [first_id]
    assert await writer.append(_event(10)) is True
    assert writer.open_batch_id != first_id


@pytest.mark.asyncio
async def test_unexpected_error_never_reaches_caller(make_writer, store):
    writer = make_writer()

    with patch.object(store, "create_open_batch", side_effect=RuntimeError("boom")):
        assert await writer.append(_event(10)) is False


@pytest.mark.asyncio
async def test_append_dropped_when_disk_is_full(make_writer, store):
    writer = make_writer()

    with patch.object(store, "has_free_disk_for_write", return_value=False):
        assert await writer.append(_event(10)) is False

    assert writer.open_batch_id is None


@pytest.mark.asyncio
async def test_store_purge_resets_open_batch(make_writer, store):
    writer = make_writer()
    await writer.append(_event(10))

    await store.purge_all()

    assert writer.open_batch_id is None
    assert await writer.append(_event(10)) is True
    assert writer.open_batch_id is not None
