"""
Unit tests for the retry backoff policy.
"""

from datetime import datetime, timedelta, timezone

import pytest

from outbox_relay.core.config import OutboxSettings
from outbox_relay.core.outbox.retry import RetryPolicy


class TestDelay:
    """Tests for delay_ms."""

    def test_first_retry_waits_base(self):
        """With no jitter the first retry waits exactly the base delay."""
        policy = RetryPolicy(base_ms=60_000, cap_ms=1_800_000, jitter_ratio=0.0)
        assert policy.delay_ms(0) == 60_000

    def test_doubles_per_attempt(self):
        policy = RetryPolicy(base_ms=1_000, cap_ms=10_000_000, jitter_ratio=0.0)
        assert [policy.delay_ms(n) for n in range(5)] == [1_000, 2_000, 4_000, 8_000, 16_000]

    def test_capped(self):
        """Delays never exceed the cap."""
        policy = RetryPolicy(base_ms=60_000, cap_ms=1_800_000, jitter_ratio=0.0)
        assert policy.delay_ms(5) == 1_800_000
        assert policy.delay_ms(10_000) == 1_800_000

    def test_jitter_bounded_by_ratio(self):
        policy = RetryPolicy(base_ms=1_000, cap_ms=1_000_000, jitter_ratio=0.1, rng=lambda: 0.999)
        delay = policy.delay_ms(2)
        assert 4_000 <= delay < 4_400

    def test_jitter_applied_before_cap(self):
        """Jitter can never push a delay beyond the cap."""
        policy = RetryPolicy(base_ms=1_000, cap_ms=4_200, jitter_ratio=1.0, rng=lambda: 0.9)
        assert policy.delay_ms(2) == 4_200

    @pytest.mark.parametrize("rng_value", [0.0, 0.3, 0.999])
    def test_monotonic_in_attempts(self, rng_value):
        """For a fixed jitter draw the delay never decreases as attempts grow."""
        policy = RetryPolicy(base_ms=500, cap_ms=120_000, jitter_ratio=0.5, rng=lambda: rng_value)
        delays = [policy.delay_ms(n) for n in range(20)]
        assert delays == sorted(delays)
        assert all(d <= 120_000 for d in delays)

    def test_negative_attempts_treated_as_zero(self):
        policy = RetryPolicy(base_ms=1_000, cap_ms=10_000, jitter_ratio=0.0)
        assert policy.delay_ms(-3) == 1_000

    def test_next_retry_at(self):
        policy = RetryPolicy(base_ms=60_000, cap_ms=1_800_000, jitter_ratio=0.0)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert policy.next_retry_at(1, now) == now + timedelta(minutes=2)


class TestConstruction:

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_ms": 0},
            {"base_ms": 10_000, "cap_ms": 1_000},
            {"jitter_ratio": 1.5},
        ],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_from_settings(self):
        settings = OutboxSettings(max_attempts=3, backoff_base_ms=100, backoff_cap_ms=1_000, backoff_jitter_ratio=0.0)
        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts == 3
        assert policy.delay_ms(0) == 100
        assert policy.exhausted(3)
        assert not policy.exhausted(2)
