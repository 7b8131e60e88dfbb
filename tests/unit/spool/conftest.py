"""Shared fixtures for spool pipeline tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
import pytest_asyncio

import telemetry_spool.event_emitter as em_module
from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.event_emitter import init_emitter
from telemetry_spool.models import ConsentState
from telemetry_spool.storage.batch_store import BatchStore
from telemetry_spool.storage.batch_writer import BatchWriter
from telemetry_spool.storage.storage_budget import StorageBudget, StoragePolicy


@pytest_asyncio.fixture(scope="function", autouse=True)
async def initialize_emitter():
    """Initialize the emitter for each test with the current event loop."""
    loop = asyncio.get_running_loop()

    em_module._emitter = None

    emitter = init_emitter(loop=loop)

    yield emitter

    emitter.remove_all_listeners()

    em_module._emitter = None


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spool_dir(tmp_path: Path) -> Path:
    return tmp_path / "spool"


@pytest.fixture
def make_store(spool_dir: Path) -> Callable[..., BatchStore]:
    """Factory for a BatchStore with a configurable storage limit."""

    def _make(storage_limit_bytes: int | None = None) -> BatchStore:
        budget = StorageBudget(
            spool_dir,
            StoragePolicy(
                storage_limit_bytes=storage_limit_bytes,
                min_free_disk_bytes=0,
                refresh_seconds=0.0,
            ),
        )
        return BatchStore(spool_dir, budget)

    return _make


@pytest.fixture
def store(make_store: Callable[..., BatchStore]) -> BatchStore:
    return make_store()


@pytest.fixture
def consent(store: BatchStore) -> ConsentGate:
    return ConsentGate(store, ConsentState.GRANTED)


@pytest.fixture
def make_writer(
    store: BatchStore, consent: ConsentGate, clock: FakeClock
) -> Callable[..., BatchWriter]:
    """Factory for a BatchWriter sharing the store, consent gate and clock."""

    def _make(
        max_batch_size_bytes: int = 1024, max_batch_age_seconds: float = 60.0
    ) -> BatchWriter:
        return BatchWriter(
            store=store,
            consent=consent,
            max_batch_size_bytes=max_batch_size_bytes,
            max_batch_age_seconds=max_batch_age_seconds,
            clock=clock,
        )

    return _make
