"""Tests for ConsentGate transitions and their effect on stored data."""

from __future__ import annotations

import asyncio

import pytest

from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.event_emitter import Emitter, get_emitter
from telemetry_spool.models import ConsentState, EventRecord
from telemetry_spool.storage.batch_writer import BatchWriter


def _event(payload: bytes = b"event") -> EventRecord:
    return EventRecord(payload=payload, created_at=1_700_000_000.0)


@pytest.mark.asyncio
async def test_permissions_per_state(store):
    gate = ConsentGate(store)
    assert gate.current_state() == ConsentState.PENDING
    assert gate.allows_persist() is True
    assert gate.allows_upload() is False

    gate = ConsentGate(store, ConsentState.GRANTED)
    assert gate.allows_persist() is True
    assert gate.allows_upload() is True

    gate = ConsentGate(store, ConsentState.NOT_GRANTED)
    assert gate.allows_persist() is False
    assert gate.allows_upload() is False


@pytest.mark.asyncio
async def test_pending_to_granted_keeps_buffered_batches(store, clock):
    gate = ConsentGate(store, ConsentState.PENDING)
    writer = BatchWriter(
        store=store,
        consent=gate,
        max_batch_size_bytes=1024,
        max_batch_age_seconds=60.0,
        clock=clock,
    )
    assert await writer.append(_event(b"a")) is True
    assert await writer.append(_event(b"b")) is True
    batch_id = await writer.rotate()

    await gate.set_state(ConsentState.GRANTED)

    assert gate.allows_upload() is True
    assert store.list_pending_batch_ids() == [batch_id]
    batch = await store.read_batch(batch_id)
    assert [event.payload for event in batch.events] == [b"a", b"b"]


@pytest.mark.asyncio
async def test_not_granted_purges_everything_and_blocks_new_events(
    make_writer, consent, store
):
    writer = make_writer()
    await writer.append(_event(b"closed"))
    await writer.rotate()
    await writer.append(_event(b"open"))

    await consent.set_state(ConsentState.NOT_GRANTED)

    assert store.list_pending_batch_ids() == []
    assert store.total_bytes_on_disk() == 0

    assert await writer.append(_event(b"late")) is False
    assert await writer.rotate() is None
    assert store.list_pending_batch_ids() == []
    assert store.total_bytes_on_disk() == 0


@pytest.mark.asyncio
async def test_transition_emits_consent_changed(consent):
    changes: list[tuple[ConsentState, ConsentState]] = []
    get_emitter().on(
        Emitter.CONSENT_CHANGED, lambda prev, new: changes.append((prev, new))
    )

    await consent.set_state(ConsentState.PENDING)
    await consent.set_state(ConsentState.NOT_GRANTED)

    assert changes == [
        (ConsentState.GRANTED, ConsentState.PENDING),
        (ConsentState.PENDING, ConsentState.NOT_GRANTED),
    ]


@pytest.mark.asyncio
async def test_same_state_is_a_no_op(consent, make_writer, store):
    writer = make_writer()
    await writer.append(_event())
    await writer.rotate()
    changes: list[object] = []
    get_emitter().on(Emitter.CONSENT_CHANGED, lambda *args: changes.append(args))

    await consent.set_state(ConsentState.GRANTED)

    assert changes == []
    assert len(store.list_pending_batch_ids()) == 1


@pytest.mark.asyncio
async def test_state_accepts_raw_values(consent):
    await consent.set_state("pending")

    assert consent.current_state() == ConsentState.PENDING


@pytest.mark.asyncio
async def test_initialize_purges_leftovers_when_not_granted(make_store, clock):
    first = make_store()
    batch_id = await first.create_open_batch(clock())
    async with first.lock_for(batch_id):
        await first.append_frame(batch_id, _event().to_frame())
    await first.close_batch(batch_id, total_size_bytes=5, event_count=1)

    store = make_store()
    gate = ConsentGate(store, ConsentState.NOT_GRANTED)
    await gate.initialize()

    assert store.list_pending_batch_ids() == []


@pytest.mark.asyncio
async def test_initialize_keeps_batches_when_pending(make_store, clock):
    store = make_store()
    batch_id = await store.create_open_batch(clock())
    async with store.lock_for(batch_id):
        await store.append_frame(batch_id, _event().to_frame())
    await store.close_batch(batch_id, total_size_bytes=5, event_count=1)

    gate = ConsentGate(store, ConsentState.PENDING)
    await gate.initialize()

    assert store.list_pending_batch_ids() == [batch_id]


@pytest.mark.asyncio
async def test_withdrawal_while_batch_is_created_does_not_break_later_appends(
    make_writer, consent, store, spool_dir, monkeypatch
):
    writer = make_writer()
    filesystem = store._filesystem
    original_fsync_dir = filesystem.fsync_dir
    creating = asyncio.Event()
    release = asyncio.Event()
    calls = 0

    async def held_fsync_dir() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            creating.set()
            await release.wait()
        await original_fsync_dir()

    monkeypatch.setattr(filesystem, "fsync_dir", held_fsync_dir)

    racing_append = asyncio.create_task(writer.append(_event(b"racing")))
    await creating.wait()
    await consent.set_state(ConsentState.NOT_GRANTED)
    release.set()

    assert await racing_append is False
    assert writer.open_batch_id is None
    assert list(spool_dir.glob("*.open")) == []

    await consent.set_state(ConsentState.GRANTED)
    assert await writer.append(_event(b"after")) is True
    batch_id = await writer.rotate()

    assert store.list_pending_batch_ids() == [batch_id]
    batch = await store.read_batch(batch_id)
    assert [event.payload for event in batch.events] == [b"after"]
