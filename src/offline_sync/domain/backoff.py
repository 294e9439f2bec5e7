from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

from offline_sync.config import Settings

# Keeps 2**n bounded; the delay is capped long before this matters.
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    exhausted_delay_ms: int = 24 * 60 * 60 * 1000
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, s: Settings) -> "BackoffPolicy":
        return cls(
            base_delay_ms=int(s.retry_base_delay_seconds * 1000),
            max_delay_ms=int(s.retry_max_delay_seconds * 1000),
            exhausted_delay_ms=int(s.exhausted_retry_delay_seconds * 1000),
        )

    def base_delay_for(self, attempts: int) -> int:
        """Capped exponential delay without jitter: min(base * 2^(attempts-1), max)."""
        exponent = min(max(attempts - 1, 0), _MAX_EXPONENT)
        return min(self.base_delay_ms * (2**exponent), self.max_delay_ms)

    def delay_for(self, attempts: int, *, rng: Callable[[], float] = random.random) -> int:
        delay = self.base_delay_for(attempts)
        jitter = rng() * self.jitter_ratio * delay
        return int(delay + jitter)

    def next_retry_at_ms(
        self,
        *,
        attempts: int,
        max_attempts: int,
        now_ms: int,
        rng: Callable[[], float] = random.random,
    ) -> int:
        if attempts >= max_attempts:
            # Exhausted items sink to the back instead of being dropped.
            return now_ms + self.exhausted_delay_ms
        return now_ms + self.delay_for(attempts, rng=rng)
