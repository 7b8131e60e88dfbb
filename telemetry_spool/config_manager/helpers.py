"""Helpers for parsing byte-sized and duration CLI arguments."""

import shutil
from pathlib import Path

from telemetry_spool.config_manager.spool_config import SpoolConfig
from telemetry_spool.const import (
    DEFAULT_STORAGE_LIMIT_BYTES,
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
)

DEFAULT_STORAGE_FREE_FRACTION = 0.1

_DURATION_UNITS = {
    "s": 1,
    "sec": 1,
    "m": SECONDS_PER_MINUTE,
    "min": SECONDS_PER_MINUTE,
    "h": SECONDS_PER_HOUR,
    "d": SECONDS_PER_DAY,
}


def _split_number_and_unit(value: str) -> tuple[str, str]:
    numeric_part = ""
    unit_suffix = ""
    for character in value:
        if character.isdigit() or (character == "." and not unit_suffix):
            numeric_part += character
        else:
            unit_suffix += character
    return numeric_part, unit_suffix.strip()


def parse_bytes(value: int | str) -> int:
    """Parse a byte quantity from an integer or unit-suffixed string.

    Supported string units (case-insensitive):
        b, k, kb, m, mb, g, gb

    Args:
        value: Raw byte value as an ``int`` or string with an optional unit
            suffix.

    Returns:
        The parsed value in bytes.

    Raises:
        ValueError: If the input cannot be parsed or contains an unknown unit.
    """
    if isinstance(value, int):
        return value

    normalized_value = str(value).strip().lower()

    if normalized_value.isdigit():
        return int(normalized_value)

    numeric_part, unit_suffix = _split_number_and_unit(normalized_value)

    if not numeric_part or not unit_suffix or "." in numeric_part:
        raise ValueError(f"Invalid byte value: {value!r}")

    base_value = int(numeric_part)
    if unit_suffix == "b":
        multiplier = 1
    elif unit_suffix in {"k", "kb"}:
        multiplier = 1024
    elif unit_suffix in {"m", "mb"}:
        multiplier = 1024**2
    elif unit_suffix in {"g", "gb"}:
        multiplier = 1024**3
    else:
        raise ValueError(f"Unknown byte unit in value: {value!r}")

    return base_value * multiplier


def parse_duration(value: float | int | str) -> float:
    """Parse a duration in seconds from a number or unit-suffixed string.

    Supported string units (case-insensitive):
        s, sec, m, min, h, d

    Args:
        value: Raw duration as a number of seconds or a string such as
            ``"15s"``, ``"10m"`` or ``"18h"``.

    Returns:
        The parsed value in seconds.

    Raises:
        ValueError: If the input cannot be parsed or contains an unknown unit.
    """
    if isinstance(value, (int, float)):
        return float(value)

    normalized_value = str(value).strip().lower()
    numeric_part, unit_suffix = _split_number_and_unit(normalized_value)

    if not numeric_part:
        raise ValueError(f"Invalid duration: {value!r}")

    try:
        base_value = float(numeric_part)
    except ValueError as exc:
        raise ValueError(f"Invalid duration: {value!r}") from exc

    if not unit_suffix:
        return base_value
    if unit_suffix not in _DURATION_UNITS:
        raise ValueError(f"Unknown duration unit in value: {value!r}")
    return base_value * _DURATION_UNITS[unit_suffix]


def calculate_storage_limit(spool_dir: Path, storage_free_fraction: float) -> int:
    """Calculate the maximum number of bytes to allocate for the spool.

    The limit is the smaller of the default cap and a fraction of the free
    space currently available on the spool filesystem.

    Args:
        spool_dir: Directory on the target filesystem used to determine free space.
        storage_free_fraction: Fraction of free bytes to allocate (e.g. 0.1 for 10%).

    Returns:
        Storage limit in bytes.
    """
    free_bytes = shutil.disk_usage(spool_dir).free
    fraction_bytes = int(storage_free_fraction * free_bytes)
    return max(1, min(DEFAULT_STORAGE_LIMIT_BYTES, fraction_bytes))


def build_default_spool_config(
    storage_free_fraction: float = DEFAULT_STORAGE_FREE_FRACTION,
) -> SpoolConfig:
    """Build a default spool configuration based on local disk availability.

    Args:
        storage_free_fraction: Fraction of free disk space the spool may use.

    Returns:
        A SpoolConfig with the computed storage limit and default paths.
    """
    config = SpoolConfig()
    config.spool_dir.mkdir(parents=True, exist_ok=True)
    storage_limit = calculate_storage_limit(config.spool_dir, storage_free_fraction)
    return config.model_copy(update={"storage_limit_bytes": storage_limit})
