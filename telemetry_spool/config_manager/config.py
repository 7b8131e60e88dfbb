"""Resolve spool configuration from profile, environment, and CLI overrides."""

from __future__ import annotations

import logging
import os
from typing import Any

from telemetry_spool.config_manager.profiles import ProfileManager, normalize_units
from telemetry_spool.config_manager.spool_config import SpoolConfig

logger = logging.getLogger(__name__)

_ENV_MAP: dict[str, str] = {
    "spool_dir": "TSPOOL_SPOOL_DIR",
    "state_db_path": "TSPOOL_STATE_DB_PATH",
    "intake_url": "TSPOOL_INTAKE_URL",
    "api_key": "TSPOOL_API_KEY",
    "max_batch_size_bytes": "TSPOOL_MAX_BATCH_SIZE",
    "max_batch_age_seconds": "TSPOOL_MAX_BATCH_AGE",
    "max_retention_seconds": "TSPOOL_MAX_RETENTION",
    "storage_limit_bytes": "TSPOOL_STORAGE_LIMIT",
    "tick_interval_seconds": "TSPOOL_TICK_INTERVAL",
    "max_concurrent_uploads": "TSPOOL_MAX_CONCURRENT_UPLOADS",
    "upload_timeout_seconds": "TSPOOL_UPLOAD_TIMEOUT",
    "initial_consent": "TSPOOL_INITIAL_CONSENT",
    "log_level": "TSPOOL_LOG_LEVEL",
}


class ConfigManager:
    """Build effective spool configuration from profile, env, and CLI overrides."""

    def __init__(
        self, profile_manager: ProfileManager, profile: str | None = None
    ) -> None:
        """Initialise ConfigManager.

        Args:
            profile_manager: ProfileManager instance
            profile: Name of the profile to load as the base configuration.
        """
        self.profile_manager = profile_manager
        self.profile = profile

    def _read_env_overrides(self) -> dict[str, Any]:
        """Read spool configuration overrides from environment variables.

        Values that cannot be parsed are ignored with a warning.

        Returns:
            A dictionary of configuration field names to override values.
        """
        overrides: dict[str, Any] = {}

        for field_name, env_var_name in _ENV_MAP.items():
            env_value = os.getenv(env_var_name)
            if env_value is None:
                continue

            if field_name == "max_concurrent_uploads":
                try:
                    overrides[field_name] = int(env_value)
                except ValueError:
                    logger.warning("Ignoring invalid %s=%r", env_var_name, env_value)
                    continue
            else:
                try:
                    overrides.update(normalize_units({field_name: env_value}))
                except ValueError:
                    logger.warning("Ignoring invalid %s=%r", env_var_name, env_value)
                    continue

        return overrides

    def resolve_effective_config(
        self, cli_config: dict[str, Any] | None = None
    ) -> SpoolConfig:
        """Resolve the effective spool configuration for this run.

        Args:
            cli_config: Optional CLI-provided configuration overrides.

        Returns:
            The resolved ``SpoolConfig``.
        """
        base_config = self.profile_manager.get_profile(self.profile)

        merged = base_config.model_dump()
        merged.update(self._read_env_overrides())

        if cli_config is not None:
            merged.update(normalize_units(cli_config))

        return SpoolConfig.model_validate(merged)
