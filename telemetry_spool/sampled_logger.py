"""Sampled logger for high-frequency log messages.

Dropped events can arrive in floods (a full disk, withdrawn consent), so their
diagnostics are only logged at configurable intervals.
"""

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


def make_sampled_logger(
    log_format: str,
    log_interval: int = 1000,
    target_logger: logging.Logger | None = None,
    level: int = logging.WARNING,
) -> Callable[..., None]:
    """Create a sampled logger that logs the first and every Nth occurrence.

    Occurrences are counted per key, so a burst of one kind of message does
    not hide the first occurrence of another.

    Args:
        log_format: Format string for the log message. The first placeholder
                    receives the key, the second the occurrence count, the
                    remaining placeholders receive format_args.
        log_interval: Log every Nth occurrence of a key (default 1000)
        target_logger: Logger instance to use (default: module logger)
        level: Log level to use (default: WARNING)

    Returns:
        A function: (key, *format_args) -> None
    """
    if log_interval <= 0:
        raise ValueError(f"log_interval must be positive, got {log_interval}")

    counts: dict[str, int] = {}
    _logger = target_logger or logger

    def log_sampled(key: str, *format_args: object) -> None:
        count = counts.get(key, 0) + 1
        counts[key] = count
        if count == 1 or count % log_interval == 0:
            _logger.log(level, log_format, key, count, *format_args)

    return log_sampled
