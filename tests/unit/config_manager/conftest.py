"""Fixtures isolating CLI and config tests from the real environment."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from telemetry_spool.config_manager import args_handler
from telemetry_spool.config_manager.profiles import ProfileManager


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every spool path at tmp_path and clear TSPOOL_* overrides."""
    for name in list(os.environ):
        if name.startswith("TSPOOL_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TSPOOL_SPOOL_DIR", str(tmp_path / "spool"))
    monkeypatch.setenv("TSPOOL_STATE_DB_PATH", str(tmp_path / "state.db"))
    return tmp_path


@pytest.fixture
def temporary_home(tmp_path: Path) -> Path:
    """Provide an isolated home directory for profile tests."""
    home_directory = tmp_path / "home"
    home_directory.mkdir()
    return home_directory


@pytest.fixture
def profile_manager(
    temporary_home: Path, monkeypatch: pytest.MonkeyPatch
) -> ProfileManager:
    """ProfileManager rooted at the temporary home, also used by the CLI."""
    manager = ProfileManager(home_path=temporary_home)
    monkeypatch.setattr(args_handler, "profile_manager", manager)
    return manager


@pytest.fixture
def profiles_directory(temporary_home: Path) -> Path:
    """Return the profiles directory under the temporary home."""
    return temporary_home / ".telemetry_spool" / "profiles"
