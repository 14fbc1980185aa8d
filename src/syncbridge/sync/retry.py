"""Exponential backoff with full jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from ..config import RetryConfig


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry bounds for applying one event.

    `max_attempts` counts every Applying attempt including the first. The
    elapsed cap bounds total time spent on one event: a retry whose delay
    would cross it is not scheduled.
    """
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    max_attempts: int = 5
    max_elapsed_seconds: float = 120.0
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be >= 0")
        if self.max_elapsed_seconds <= 0:
            raise ValueError("max_elapsed_seconds must be > 0")

    @classmethod
    def from_config(cls, config: RetryConfig, rng: Callable[[], float] | None = None) -> RetryPolicy:
        return cls(
            base_delay_seconds=config.base_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            max_attempts=config.max_attempts,
            max_elapsed_seconds=config.max_elapsed_seconds,
            rng=rng or random.random,
        )

    def backoff_ceiling(self, attempt: int) -> float:
        """Upper bound of the delay after the given failed attempt (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # Cap the exponent before it overflows float range
        exponent = min(attempt - 1, 62)
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))

    def delay(self, attempt: int) -> float:
        """Full jitter: uniform in [0, ceiling]."""
        return self.rng() * self.backoff_ceiling(attempt)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def within_budget(self, elapsed: float, next_delay: float) -> bool:
        return elapsed + next_delay <= self.max_elapsed_seconds
