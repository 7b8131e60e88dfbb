"""API for handling spool profile information."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from telemetry_spool.config_manager.helpers import (
    build_default_spool_config,
    parse_bytes,
    parse_duration,
)
from telemetry_spool.config_manager.spool_config import SpoolConfig

BYTE_FIELDS = ("max_batch_size_bytes", "storage_limit_bytes", "min_free_disk_bytes")
DURATION_FIELDS = (
    "max_batch_age_seconds",
    "max_retention_seconds",
    "tick_interval_seconds",
    "upload_timeout_seconds",
    "backoff_base_seconds",
    "backoff_max_seconds",
    "connectivity_check_interval_seconds",
    "submit_timeout_seconds",
)


class ProfileNotFound(Exception):
    """Raised when a requested profile cannot be found on disk."""


class ProfileAlreadyExist(Exception):
    """Raised when attempting to create a profile that already exists."""


def normalize_units(raw: dict[str, Any]) -> dict[str, Any]:
    """Convert unit-suffixed byte and duration values to numbers.

    Args:
        raw: Mapping of field names to raw values.

    Returns:
        A copy of ``raw`` with byte and duration fields converted.

    Raises:
        ValueError: If a byte or duration value cannot be parsed.
    """
    normalized = dict(raw)
    for field_name in BYTE_FIELDS:
        raw_value = normalized.get(field_name)
        if raw_value is not None:
            normalized[field_name] = parse_bytes(raw_value)
    for field_name in DURATION_FIELDS:
        raw_value = normalized.get(field_name)
        if raw_value is not None:
            normalized[field_name] = parse_duration(raw_value)
    return normalized


class ProfileManager:
    """Manage spool profiles stored on disk."""

    def __init__(
        self,
        home_path: Path | None = None,
    ) -> None:
        """Initialise ProfileManager."""
        self._home_path = home_path or Path.home()

    @property
    def home_path(self) -> Path:
        """Return the home path used for resolving configuration."""
        return self._home_path

    def _profiles_dir(self) -> Path:
        """Return the directory where spool profiles are stored."""
        return self._home_path / ".telemetry_spool" / "profiles"

    def _get_profile_path(self, profile: str) -> Path:
        """Return the filesystem path for a given profile name.

        Args:
            profile: Name of the profile.

        Returns:
            Path to the profile YAML file.
        """
        profiles_dir = self._profiles_dir()
        profiles_dir.mkdir(parents=True, exist_ok=True)
        return profiles_dir / f"{profile}.yaml"

    def list_profiles(self) -> list[str]:
        """List available profile names.

        Returns:
            List of profile names without the ``.yaml`` suffix.
        """
        profiles_dir = self._profiles_dir()
        if not profiles_dir.exists():
            return []

        names: list[str] = []
        for path in profiles_dir.iterdir():
            if path.is_file() and path.suffix == ".yaml":
                names.append(path.stem)
        return sorted(names)

    def get_profile(self, profile: str | None = None) -> SpoolConfig:
        """Load a profile configuration from disk.

        Args:
            profile: Name of the profile to load, None for the defaults.

        Returns:
            Parsed spool configuration for the profile.

        Raises:
            ProfileNotFound:
                If the profile YAML file does not exist.
        """
        if profile is None:
            return build_default_spool_config()

        profile_path = self._get_profile_path(profile)

        try:
            with profile_path.open("r") as profile_file:
                profile_data = yaml.safe_load(profile_file) or {}
        except FileNotFoundError as exc:
            raise ProfileNotFound(f"Profile {profile!r} not found.") from exc

        return SpoolConfig(**normalize_units(profile_data))

    def create_profile(self, profile: str) -> None:
        """Create a new profile with default configuration values.

        Args:
            profile: Name of the profile to create.

        Raises:
            ProfileAlreadyExist:
                If a profile with the same name already exists.
        """
        profile_path = self._get_profile_path(profile)
        spool_config = SpoolConfig()

        try:
            with profile_path.open("x") as profile_file:
                yaml.safe_dump(spool_config.model_dump(mode="json"), profile_file)
        except FileExistsError as exc:
            raise ProfileAlreadyExist(f"Profile {profile!r} already exists.") from exc

    def update_profile(self, profile: str, updates: dict[str, Any]) -> SpoolConfig:
        """Update an existing profile with the provided field values.

        Args:
            profile: Name of the profile to update.
            updates: Mapping of field names to new values. Fields with a value of
                ``None`` are ignored and do not overwrite existing values.

        Returns:
            The updated spool configuration.

        Raises:
            ProfileNotFound:
                If the profile YAML file does not exist.
        """
        profile_path = self._get_profile_path(profile)

        current = self.get_profile(profile)
        filtered_updates = {
            name: value for name, value in updates.items() if value is not None
        }
        new_config = SpoolConfig.model_validate(
            {**current.model_dump(), **normalize_units(filtered_updates)}
        )

        with profile_path.open("w") as profile_file:
            yaml.safe_dump(new_config.model_dump(mode="json"), profile_file)

        return new_config
