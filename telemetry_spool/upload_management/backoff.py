"""Retry delay policy for failed uploads."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field

from telemetry_spool.const import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX_SECONDS,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with multiplicative jitter.

    ``delay(n) = min(max, base * 2**(n - 1) * (1 + jitter * U[0, 1)))``.
    With ``jitter < 1`` the jittered ranges of consecutive attempts never
    overlap, so delays strictly increase until they reach the cap.

    Attributes:
        base_seconds: Delay before the first retry, without jitter.
        max_seconds: Upper bound of any delay.
        jitter: Relative jitter in [0, 1).
        rng: Uniform [0, 1) source.
    """

    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    jitter: float = DEFAULT_BACKOFF_JITTER
    rng: Callable[[], float] = field(default=random.random, compare=False)

    def __post_init__(self) -> None:
        """Validate the policy."""
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay(self, attempt: int) -> float:
        """Return the wait before retrying after ``attempt`` failures.

        Args:
            attempt: Number of failed attempts so far, starting at 1.

        Returns:
            Delay in seconds.
        """
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # Cap the exponent so huge attempt counts cannot overflow the float.
        exponent = min(attempt - 1, 64)
        delay = self.base_seconds * 2**exponent * (1 + self.jitter * self.rng())
        return min(self.max_seconds, delay)
