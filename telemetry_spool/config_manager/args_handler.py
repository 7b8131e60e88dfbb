"""Handlers for telemetry-spool CLI commands."""

from __future__ import annotations

import argparse
import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from telemetry_spool.bootstrap import Spool
from telemetry_spool.config_manager.config import ConfigManager
from telemetry_spool.config_manager.helpers import parse_bytes, parse_duration
from telemetry_spool.config_manager.profiles import (
    ProfileAlreadyExist,
    ProfileManager,
    ProfileNotFound,
)
from telemetry_spool.config_manager.spool_config import SpoolConfig
from telemetry_spool.event_emitter import init_emitter, reset_emitter
from telemetry_spool.lifecycle.spool_lifecycle import install_signal_handlers
from telemetry_spool.models import ConsentState
from telemetry_spool.state_management.state_store_sqlite import SqliteStateStore
from telemetry_spool.storage.batch_store import BatchStore
from telemetry_spool.storage.storage_budget import StorageBudget, StoragePolicy

profile_manager = ProfileManager()

T = TypeVar("T")


def add_common_config_args(parser: argparse.ArgumentParser) -> None:
    """Register common spool configuration flags on an argparse parser.

    Args:
        parser: The argparse parser (or subparser) to attach configuration
            arguments to.
    """
    parser.add_argument(
        "--spool-dir",
        "--spool_dir",
        dest="spool_dir",
        help="Directory where batch files are stored.",
    )
    parser.add_argument(
        "--state-db-path",
        "--state_db_path",
        dest="state_db_path",
        help="SQLite database holding upload retry state.",
    )
    parser.add_argument(
        "--intake-url",
        "--intake_url",
        dest="intake_url",
        help="Endpoint batches are uploaded to.",
    )
    parser.add_argument(
        "--api-key",
        "--api_key",
        dest="api_key",
        help="API key sent with every upload.",
    )
    parser.add_argument(
        "--max-batch-size",
        "--max_batch_size",
        dest="max_batch_size_bytes",
        type=parse_bytes,
        help="Batch size after which a new batch is started (e.g. 512k).",
    )
    parser.add_argument(
        "--max-batch-age",
        "--max_batch_age",
        dest="max_batch_age_seconds",
        type=parse_duration,
        help="Age after which the open batch is closed (e.g. 15s).",
    )
    parser.add_argument(
        "--max-retention",
        "--max_retention",
        dest="max_retention_seconds",
        type=parse_duration,
        help="Age after which unsent batches are evicted (e.g. 18h).",
    )
    parser.add_argument(
        "--storage-limit",
        "--storage_limit",
        dest="storage_limit_bytes",
        type=parse_bytes,
        help="Storage limit in bytes.",
    )
    parser.add_argument(
        "--tick-interval",
        "--tick_interval",
        dest="tick_interval_seconds",
        type=parse_duration,
        help="Upload scheduler cadence.",
    )
    parser.add_argument(
        "--max-concurrent-uploads",
        "--max_concurrent_uploads",
        dest="max_concurrent_uploads",
        type=int,
        help="Number of batches uploaded at the same time.",
    )
    parser.add_argument(
        "--upload-timeout",
        "--upload_timeout",
        dest="upload_timeout_seconds",
        type=parse_duration,
        help="Timeout of a single upload attempt.",
    )
    parser.add_argument(
        "--log-level",
        "--log_level",
        dest="log_level",
        help="Diagnostic log level (DEBUG, INFO, WARNING, ...).",
    )


def add_profile_arg(parser: argparse.ArgumentParser) -> None:
    """Register the ``--profile`` flag selecting the base configuration."""
    parser.add_argument(
        "--profile",
        dest="profile",
        default=None,
        help="Profile to load as the base configuration.",
    )


def _extract_config_updates(args: argparse.Namespace) -> dict[str, Any]:
    """Extract SpoolConfig field values from parsed CLI arguments.

    Args:
        args: Parsed argparse namespace containing CLI flags for various commands.

    Returns:
        A dict of SpoolConfig field names to values, excluding keys that are not part
        of SpoolConfig and excluding values that are None.
    """
    allowed = set(SpoolConfig.model_fields.keys())
    raw = vars(args)
    return {k: v for k, v in raw.items() if k in allowed and v is not None}


def resolve_config(args: argparse.Namespace) -> SpoolConfig:
    """Resolve the effective configuration for a command.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Configuration from profile, environment and CLI flags.
    """
    config_manager = ConfigManager(profile_manager, getattr(args, "profile", None))
    return config_manager.resolve_effective_config(_extract_config_updates(args))


def _run_with_emitter(func: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine on a fresh loop that owns a spool emitter."""

    async def runner() -> T:
        init_emitter(loop=asyncio.get_running_loop())
        try:
            return await func()
        finally:
            reset_emitter()

    return asyncio.run(runner())


def _open_store(config: SpoolConfig) -> BatchStore:
    budget = StorageBudget(
        config.spool_dir,
        StoragePolicy(
            storage_limit_bytes=config.storage_limit_bytes,
            min_free_disk_bytes=config.min_free_disk_bytes,
            refresh_seconds=0,
        ),
    )
    return BatchStore(config.spool_dir, budget)


def handle_profile_create(args: argparse.Namespace) -> None:
    """Handle the profile create CLI command.

    Args:
        args: Parsed CLI arguments containing the profile name.
    """
    try:
        profile_manager.create_profile(args.name)
        print(f"Created profile {args.name!r}.")
    except ProfileAlreadyExist as exc:
        print(exc)


def handle_profile_update(args: argparse.Namespace) -> None:
    """Handle the profile update CLI command.

    Args:
        args: Parsed CLI arguments containing the profile name and any
            configuration fields to update.
    """
    updates = _extract_config_updates(args)

    try:
        profile_manager.update_profile(args.name, updates)
        print(f"Updated profile {args.name!r}.")
    except ProfileNotFound as exc:
        print(exc)


def handle_profile_show(args: argparse.Namespace) -> None:
    """Handle the profile show CLI command.

    Args:
        args: Parsed CLI arguments containing the profile name.
    """
    try:
        config = profile_manager.get_profile(args.name)
    except ProfileNotFound as exc:
        print(exc)
        return

    print(config.model_dump_json(indent=2))


def handle_list_profile(args: argparse.Namespace) -> None:
    """Handle the ``list-profiles`` CLI command."""
    profiles = profile_manager.list_profiles()
    if not profiles:
        print("No profiles found.")
        return

    for name in profiles:
        print(name)


def handle_status(args: argparse.Namespace) -> None:
    """Handle the ``status`` CLI command.

    Prints the pending batches, the bytes they use and their retry state.
    """
    config = resolve_config(args)

    async def collect() -> tuple[list[str], int, dict[str, Any]]:
        store = _open_store(config)
        batch_ids = store.list_pending_batch_ids()
        total_bytes = store.total_bytes_on_disk()
        attempts: dict[str, Any] = {}
        if config.state_db_path.exists():
            state_store = SqliteStateStore(config.state_db_path)
            try:
                await state_store.init_async_store()
                attempts = {
                    record.batch_id: record
                    for record in await state_store.list_attempts()
                }
            finally:
                await state_store.close()
        return batch_ids, total_bytes, attempts

    batch_ids, total_bytes, attempts = _run_with_emitter(collect)

    print(f"Spool directory: {config.spool_dir}")
    print(f"Pending batches: {len(batch_ids)}")
    print(f"Bytes on disk: {total_bytes}")
    for batch_id in batch_ids:
        record = attempts.get(batch_id)
        if record is None:
            print(f"  {batch_id}")
            continue
        error_code = record.last_error_code.value if record.last_error_code else "-"
        print(
            f"  {batch_id} attempts={record.attempts} "
            f"next_retry_at={record.next_retry_at} last_error={error_code}"
        )


def handle_purge(args: argparse.Namespace) -> None:
    """Handle the ``purge`` CLI command.

    Deletes every stored batch, open or closed, and the retry state.
    """
    config = resolve_config(args)

    async def purge() -> int:
        deleted = await _open_store(config).purge_all()
        if config.state_db_path.exists():
            state_store = SqliteStateStore(config.state_db_path)
            try:
                await state_store.init_async_store()
                await state_store.delete_all()
            finally:
                await state_store.close()
        return deleted

    deleted = _run_with_emitter(purge)
    print(f"Purged {deleted} batches from {config.spool_dir}.")


def handle_launch(args: argparse.Namespace) -> None:
    """Handle the ``launch`` CLI command.

    Runs the spool in the foreground, uploading stored batches until SIGINT
    or SIGTERM.
    """
    config = resolve_config(args)
    if args.consent is not None:
        config = config.model_copy(
            update={"initial_consent": ConsentState(args.consent)}
        )

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )

    stop_requested = threading.Event()
    install_signal_handlers(lambda _signum: stop_requested.set())

    spool = Spool(config)
    spool.start()
    print(
        f"Spool running (dir={config.spool_dir}, "
        f"consent={config.initial_consent.value}). Press Ctrl+C to stop."
    )
    try:
        while not stop_requested.wait(timeout=1.0):
            pass
    finally:
        spool.stop()
    print("Spool stopped.")
