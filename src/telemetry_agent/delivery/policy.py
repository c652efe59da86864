from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with bounded upward jitter.

    For attempt ``k`` (0-based) the delay is
    ``min(max_delay_ms, base_delay_ms * 2**k * (1 + j))`` with ``j`` drawn
    uniformly from ``[0, jitter]``.
    """

    max_retries: int = 5
    base_delay_ms: float = 1000
    max_delay_ms: float = 30_000
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")

    def next_delay_ms(self, attempt: int, rng: random.Random | None = None) -> float:
        j = (rng or random).uniform(0, self.jitter) if self.jitter else 0.0
        return min(self.max_delay_ms, self.base_delay_ms * (2**attempt) * (1 + j))

    def next_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay in seconds."""
        return self.next_delay_ms(attempt, rng) / 1000.0
