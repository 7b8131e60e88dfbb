"""Spool bootstrap and lifecycle management.

This module wires the spool components together and exposes the
thread-safe ``Spool`` facade used by instrumentation.

INITIALIZATION SEQUENCE
=======================

    Spool.start()
         │
         ├─[1] Event Loop (EventLoopManager)
         │     ├── Spool loop thread started
         │     └── init_emitter(loop=spool_loop)
         │
         └─[2] Async Services (on the spool loop)
               ├── aiohttp.ClientSession
               ├── SqliteStateStore + init_async_store()
               ├── StateManager (registers event listeners)
               ├── StorageBudget + BatchStore + recover()
               ├── ConsentGate + initialize()
               ├── BatchWriter (listens for STORE_PURGED)
               ├── ConnectionManager + start() (probes the intake host)
               ├── PowerMonitor
               ├── Uploader
               └── UploadScheduler + start()


MODULE REGISTRY
===============

Caller threads:
    Spool               - host application  - submit / set_consent / flush

Spool Loop:
    Emitter             - EventLoopManager  - Event coordination
    SqliteStateStore    - bootstrap_async   - Retry bookkeeping persistence
    StateManager        - bootstrap_async   - Bookkeeping follows batches
    BatchStore          - bootstrap_async   - Batch file inventory
    ConsentGate         - bootstrap_async   - Consent transitions and purge
    BatchWriter         - bootstrap_async   - Durable appends
    ConnectionManager   - bootstrap_async   - Intake reachability
    UploadScheduler     - bootstrap_async   - Upload timing and outcomes
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from telemetry_spool.config_manager.spool_config import SpoolConfig
from telemetry_spool.connection_management.connection_manager import (
    ConnectionManager,
    StaticConnection,
)
from telemetry_spool.connection_management.power_monitor import (
    PowerMonitor,
    SysfsPowerMonitor,
)
from telemetry_spool.consent.consent_gate import ConsentGate
from telemetry_spool.const import DEFAULT_CONNECTIVITY_TIMEOUT_SECONDS
from telemetry_spool.event_loop_manager import EventLoopManager
from telemetry_spool.lifecycle.spool_lifecycle import (
    checkpoint_sqlite,
    validate_or_recover_sqlite,
)
from telemetry_spool.models import ConsentState, EventRecord
from telemetry_spool.state_management.state_manager import StateManager
from telemetry_spool.state_management.state_store_sqlite import SqliteStateStore
from telemetry_spool.storage.batch_store import BatchStore
from telemetry_spool.storage.batch_writer import BatchWriter
from telemetry_spool.storage.storage_budget import StorageBudget, StoragePolicy
from telemetry_spool.upload_management.backoff import BackoffPolicy
from telemetry_spool.upload_management.upload_scheduler import UploadScheduler
from telemetry_spool.upload_management.uploader import Uploader

logger = logging.getLogger(__name__)

STORAGE_REFRESH_SECONDS = 60.0
BOOTSTRAP_TIMEOUT_SECONDS = 30.0


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class SpoolServices:
    """Services running on the spool loop."""

    client_session: aiohttp.ClientSession
    state_store: SqliteStateStore
    state_manager: StateManager
    store: BatchStore
    consent: ConsentGate
    writer: BatchWriter
    connection: ConnectionManager | StaticConnection
    power: PowerMonitor
    uploader: Uploader
    scheduler: UploadScheduler


# =============================================================================
# ASYNC SERVICES BOOTSTRAP (spool loop)
# =============================================================================


async def bootstrap_async_services(
    config: SpoolConfig,
    *,
    connection: ConnectionManager | StaticConnection | None = None,
    power: PowerMonitor | None = None,
    clock: Callable[[], float] = time.time,
    start_scheduler: bool = True,
) -> SpoolServices:
    """Initialize the spool services on the running loop.

    The emitter must already be initialised on this loop.

    Args:
        config: Spool configuration.
        connection: Reachability provider, a probing ConnectionManager if None.
        power: Power provider, the Linux sysfs reader if None.
        clock: Wall clock returning epoch seconds.
        start_scheduler: Start the upload tick loop.

    Returns:
        SpoolServices with all initialized services.
    """
    logger.info("Bootstrapping spool services...")

    # 1. HTTP client - shared by the uploader and the connectivity probe
    client_session = aiohttp.ClientSession()

    # 2. SQLite state store - advisory retry bookkeeping
    if not validate_or_recover_sqlite(config.state_db_path):
        logger.warning("Retry bookkeeping reset; batches are kept")
    state_store = SqliteStateStore(config.state_db_path)
    await state_store.init_async_store()
    logger.info("SqliteStateStore initialized at %s", config.state_db_path)

    # 3. StateManager - subscribes to BATCH_DELETED, STORE_PURGED
    state_manager = StateManager(state_store)

    # 4. BatchStore - closes batches left open by a previous process
    budget = StorageBudget(
        config.spool_dir,
        StoragePolicy(
            storage_limit_bytes=config.storage_limit_bytes,
            min_free_disk_bytes=config.min_free_disk_bytes,
            refresh_seconds=STORAGE_REFRESH_SECONDS,
        ),
    )
    store = BatchStore(config.spool_dir, budget)
    recovered = await store.recover()
    logger.info(
        "BatchStore ready at %s (%s batches recovered, %s pending)",
        config.spool_dir,
        recovered,
        len(store.list_pending_batch_ids()),
    )

    # 5. ConsentGate - purges leftovers when consent is not granted
    consent = ConsentGate(store, config.initial_consent)
    await consent.initialize()

    # 6. BatchWriter - subscribes to STORE_PURGED
    writer = BatchWriter(
        store=store,
        consent=consent,
        max_batch_size_bytes=config.max_batch_size_bytes,
        max_batch_age_seconds=config.max_batch_age_seconds,
        clock=clock,
    )

    # 7. Condition providers - emit IS_CONNECTED
    if connection is None:
        connection = ConnectionManager(
            client_session,
            config.intake_url,
            timeout=DEFAULT_CONNECTIVITY_TIMEOUT_SECONDS,
            check_interval=config.connectivity_check_interval_seconds,
        )
    await connection.start()
    if power is None:
        power = SysfsPowerMonitor()

    # 8. Uploader + UploadScheduler
    #    Subscribes to: CONSENT_CHANGED, BATCH_DELETED, STORE_PURGED, IS_CONNECTED
    #    Emits: UPLOAD_COMPLETE, UPLOAD_FAILED, BATCH_DROPPED
    uploader = Uploader(
        client_session,
        timeout_seconds=config.upload_timeout_seconds,
        content_type=config.content_type,
        api_key=config.api_key,
        api_key_header=config.api_key_header,
    )
    scheduler = UploadScheduler(
        store=store,
        writer=writer,
        consent=consent,
        state_manager=state_manager,
        uploader=uploader,
        connection=connection,
        power=power,
        endpoint=config.intake_url,
        backoff=BackoffPolicy(
            base_seconds=config.backoff_base_seconds,
            max_seconds=max(config.backoff_base_seconds, config.backoff_max_seconds),
            jitter=config.backoff_jitter,
        ),
        max_concurrent_uploads=config.max_concurrent_uploads,
        max_retention_seconds=config.max_retention_seconds,
        tick_interval_seconds=config.tick_interval_seconds,
        low_battery_threshold=config.low_battery_threshold,
        clock=clock,
    )
    if start_scheduler:
        await scheduler.start()

    logger.info("Spool services bootstrap complete")

    return SpoolServices(
        client_session=client_session,
        state_store=state_store,
        state_manager=state_manager,
        store=store,
        consent=consent,
        writer=writer,
        connection=connection,
        power=power,
        uploader=uploader,
        scheduler=scheduler,
    )


async def shutdown_async_services(services: SpoolServices) -> None:
    """Gracefully shutdown the spool services.

    The open batch is closed first so its events are uploadable by the next
    process. Shutdown order is otherwise the reverse of initialization.

    Args:
        services: SpoolServices to shutdown.
    """
    logger.info("Shutting down spool services...")

    try:
        await services.writer.rotate()
    except Exception:
        logger.exception("Error closing the open batch")

    try:
        await services.scheduler.stop()
        services.scheduler.close()
    except Exception:
        logger.exception("Error stopping UploadScheduler")

    try:
        await services.connection.stop()
    except Exception:
        logger.exception("Error stopping ConnectionManager")

    services.writer.close()
    services.state_manager.close()

    try:
        await services.state_store.close()
    except Exception:
        logger.exception("Error closing SqliteStateStore")

    try:
        await services.client_session.close()
    except Exception:
        logger.exception("Error closing aiohttp session")

    logger.info("Spool services shutdown complete")


# =============================================================================
# SPOOL FACADE
# =============================================================================


class Spool:
    """Thread-safe entry point of the telemetry spool.

    Usage:
        spool = Spool(config)
        spool.start()
        spool.submit(b'{"name": "span"}')
        spool.set_consent(ConsentState.GRANTED)
        ...
        spool.stop()

    No method raises because of a pipeline failure: failures are logged and
    reported through return values.
    """

    def __init__(
        self,
        config: SpoolConfig | None = None,
        *,
        connection: ConnectionManager | StaticConnection | None = None,
        power: PowerMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise Spool.

        Args:
            config: Spool configuration, defaults if None.
            connection: Reachability provider override.
            power: Power provider override.
            clock: Wall clock returning epoch seconds.
        """
        self._config = config or SpoolConfig()
        self._connection = connection
        self._power = power
        self._clock = clock
        self._loop_manager = EventLoopManager()
        self._services: SpoolServices | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def config(self) -> SpoolConfig:
        """Return the spool configuration."""
        return self._config

    @property
    def services(self) -> SpoolServices | None:
        """Return the running services, None when stopped."""
        return self._services

    @property
    def is_running(self) -> bool:
        """Whether the spool accepts events."""
        return self._services is not None

    def start(self) -> None:
        """Start the spool loop thread and its services.

        Raises:
            RuntimeError: If the spool is already running.
            Exception: Any error raised while bootstrapping; the loop is
                stopped again before it propagates.
        """
        if self._services is not None:
            raise RuntimeError("Spool already started")

        self._loop_manager.start()
        try:
            future = self._loop_manager.schedule(
                bootstrap_async_services(
                    self._config,
                    connection=self._connection,
                    power=self._power,
                    clock=self._clock,
                )
            )
            self._services = future.result(timeout=BOOTSTRAP_TIMEOUT_SECONDS)
        except Exception:
            logger.exception("Failed to bootstrap spool services")
            self._loop_manager.stop()
            raise
        logger.info("Spool started")

    def stop(self) -> None:
        """Close the open batch, stop the services and the loop thread."""
        services = self._services
        if services is None:
            return
        self._services = None

        try:
            future = self._loop_manager.schedule(shutdown_async_services(services))
            future.result(timeout=BOOTSTRAP_TIMEOUT_SECONDS)
        except Exception:
            logger.exception("Failed to shut down spool services")
        finally:
            self._loop_manager.stop()
            checkpoint_sqlite(self._config.state_db_path)
        logger.info("Spool stopped")

    def __enter__(self) -> Spool:
        """Start the spool."""
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Stop the spool."""
        self.stop()

    def _run(
        self,
        coroutine_factory: Callable[[SpoolServices], Any],
        timeout: float | None,
    ) -> Any:
        services = self._services
        if services is None:
            raise RuntimeError("Spool not running")
        if self._loop_manager.in_loop_thread():
            raise RuntimeError("Blocking spool call made from the spool loop")
        future = self._loop_manager.schedule(coroutine_factory(services))
        return future.result(timeout=timeout)

    def submit(self, event: bytes | EventRecord) -> bool:
        """Persist an event.

        Blocks until the event is durable, at most ``submit_timeout_seconds``.
        Called from the spool loop itself, the append is scheduled and the
        call returns False without waiting.

        Args:
            event: Encoded event payload or a prebuilt EventRecord.

        Returns:
            True once the event is durable on disk, False otherwise.
        """
        services = self._services
        if services is None:
            logger.debug("Dropping event submitted while the spool is stopped")
            return False

        try:
            record = (
                event if isinstance(event, EventRecord) else EventRecord.create(event)
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Dropping invalid event: %s", exc)
            return False

        if self._loop_manager.in_loop_thread():
            loop = asyncio.get_running_loop()
            task = loop.create_task(services.writer.append(record))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return False

        try:
            future = self._loop_manager.schedule(services.writer.append(record))
            return bool(future.result(timeout=self._config.submit_timeout_seconds))
        except concurrent.futures.TimeoutError:
            logger.warning(
                "Event not durable within %.1fs", self._config.submit_timeout_seconds
            )
            return False
        except Exception:
            logger.exception("Failed to submit event")
            return False

    def set_consent(self, state: ConsentState | str) -> bool:
        """Apply a consent decision.

        Blocks until a purge triggered by withdrawn consent has completed.

        Args:
            state: New consent state.

        Returns:
            True if the transition was applied.
        """
        try:
            new_state = ConsentState(state)
            # Waits for a withdrawal purge to finish, however long it takes.
            self._run(
                lambda services: services.consent.set_state(new_state), timeout=None
            )
            return True
        except Exception:
            logger.exception("Failed to apply consent %r", state)
            return False

    def consent_state(self) -> ConsentState | None:
        """Return the current consent state, None when stopped."""
        services = self._services
        return services.consent.current_state() if services else None

    def flush(self) -> str | None:
        """Close the open batch so it becomes uploadable.

        Returns:
            Id of the closed batch, or None.
        """
        try:
            return self._run(
                lambda services: services.writer.rotate(),
                timeout=self._config.submit_timeout_seconds,
            )
        except Exception:
            logger.exception("Failed to flush the open batch")
            return None
