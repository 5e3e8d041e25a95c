"""Explicit retry policy: attempt budget plus capped exponential backoff."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    The wait before attempt ``k`` (k >= 2) is
    ``min(max_delay, base_delay * multiplier ** (k - 2))`` plus a uniform
    jitter in ``[-jitter, +jitter]``, never below zero. Attempt 1 starts
    immediately.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays and jitter must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def attempts(self) -> Iterator[int]:
        return iter(range(1, self.max_attempts + 1))

    def base_delay_before(self, attempt: int) -> float:
        """Backoff before ``attempt`` without jitter."""
        if attempt <= 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 2))

    def delay_before(self, attempt: int) -> float:
        delay = self.base_delay_before(attempt)
        if attempt <= 1:
            return delay
        if self.jitter:
            delay += self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def has_attempts_after(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def call(
        self,
        fn: Callable[[], T],
        retry_on: tuple[type[BaseException], ...],
        sleep: Callable[[float], object] = time.sleep,
        label: str = "operation",
    ) -> T:
        """Run ``fn`` until it succeeds or the budget is spent.

        Only exceptions in ``retry_on`` are retried; the last one is
        re-raised once attempts run out.
        """
        for attempt in self.attempts():
            delay = self.delay_before(attempt)
            if delay > 0:
                sleep(delay)
            try:
                return fn()
            except retry_on as exc:
                if not self.has_attempts_after(attempt):
                    raise
                LOGGER.warning("%s failed on attempt %s/%s: %s", label, attempt, self.max_attempts, exc)
        raise AssertionError("unreachable: retry loop exited without result")
