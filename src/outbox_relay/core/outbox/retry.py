"""
Retry Policy

Exponential backoff with a cap for failed outbox deliveries.
"""

import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import OutboxSettings


class RetryPolicy:
    """
    delay(attempts) = min(cap, base * 2**attempts + jitter)

    Jitter is drawn from [0, jitter_ratio * base * 2**attempts) and added
    before the cap, so delays never decrease as attempts grow.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_ms: int = 60_000,
        cap_ms: int = 1_800_000,
        jitter_ratio: float = 0.1,
        rng: Optional[Callable[[], float]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_ms <= 0 or cap_ms < base_ms:
            raise ValueError("require 0 < base_ms <= cap_ms")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1]")
        self.max_attempts = max_attempts
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.random

    @classmethod
    def from_settings(
        cls,
        settings: OutboxSettings,
        rng: Optional[Callable[[], float]] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_ms=settings.backoff_base_ms,
            cap_ms=settings.backoff_cap_ms,
            jitter_ratio=settings.backoff_jitter_ratio,
            rng=rng,
        )

    def delay_ms(self, attempts: int) -> float:
        """Delay before the next attempt, given attempts already recorded."""
        attempts = max(0, attempts)
        # 2**n overflows float past ~1024; the cap is reached long before
        exponent = min(attempts, 62)
        raw = self.base_ms * (2 ** exponent)
        if raw >= self.cap_ms:
            return float(self.cap_ms)
        jitter = self._rng() * self.jitter_ratio * raw
        return float(min(self.cap_ms, raw + jitter))

    def delay(self, attempts: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempts))

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay(attempts)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
