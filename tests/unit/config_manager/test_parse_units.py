import pytest

from telemetry_spool.config_manager.helpers import (
    calculate_storage_limit,
    parse_bytes,
    parse_duration,
)
from telemetry_spool.const import DEFAULT_STORAGE_LIMIT_BYTES


@pytest.mark.parametrize(
    "value, expected",
    [
        ("0b", 0),
        ("1b", 1),
        ("1", 1),
        ("1k", 1024),
        ("1kb", 1024),
        ("512k", 512 * 1024),
        ("1mb", 1024 * 1024),
        ("300m", 300 * 1024 * 1024),
        ("1gb", 1024 * 1024 * 1024),
        ("  1KB  ", 1024),
        (4096, 4096),
    ],
)
def test_parse_bytes_valid(value, expected: int) -> None:
    assert parse_bytes(value) == expected


@pytest.mark.parametrize(
    "value",
    ["", "   ", "nope", "kb", "1KiB", "1gbps", "-1kb", "1.5gb"],
)
def test_parse_bytes_invalid_raises(value: str) -> None:
    with pytest.raises(ValueError):
        parse_bytes(value)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("15s", 15.0),
        ("15sec", 15.0),
        ("10m", 600.0),
        ("10 min", 600.0),
        ("18h", 18 * 3600.0),
        ("1.5h", 5400.0),
        ("2d", 2 * 86400.0),
        ("30", 30.0),
        ("0.25", 0.25),
        (45, 45.0),
        (2.5, 2.5),
    ],
)
def test_parse_duration_valid(value, expected: float) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "10w", "1.2.3s", "h"])
def test_parse_duration_invalid_raises(value: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)


def test_storage_limit_is_capped_by_default(tmp_path) -> None:
    limit = calculate_storage_limit(tmp_path, 1.0)

    assert 0 < limit <= DEFAULT_STORAGE_LIMIT_BYTES


def test_storage_limit_uses_fraction_of_free_space(tmp_path) -> None:
    assert calculate_storage_limit(tmp_path, 0.0) == 1
