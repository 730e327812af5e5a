"""Tests for fixed-window rate limiting."""

import pytest

from complyflow.errors import RateLimitExceeded
from complyflow.utils import FixedWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


class TestFixedWindowRateLimiter:
    """Tests for FixedWindowRateLimiter."""

    def test_allows_up_to_limit(self):
        """Requests within the limit pass with a decreasing remaining count."""
        limiter = FixedWindowRateLimiter(3, 60, clock=FakeClock())

        remaining = [limiter.check("user_1").remaining for _ in range(3)]

        assert remaining == [2, 1, 0]

    def test_rejects_with_time_to_reset(self):
        """The request past the limit is refused with the remaining window time."""
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(2, 60, clock=clock)
        limiter.hit("user_1")
        limiter.hit("user_1")
        clock.now += 15

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.hit("user_1")

        assert exc_info.value.retry_after_seconds == pytest.approx(45)

    def test_window_resets(self):
        """A new window starts once the previous one elapses."""
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)
        limiter.hit("user_1")
        clock.now += 60

        assert limiter.check("user_1").allowed

    def test_keys_are_independent(self):
        """Each caller has its own counter."""
        limiter = FixedWindowRateLimiter(1, 60, clock=FakeClock())
        limiter.hit("user_1")

        assert limiter.check("user_2").allowed
        assert not limiter.check("user_1").allowed

    def test_invalid_limit(self):
        """A limit below one is rejected."""
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(0, 60)

    def test_expired_windows_are_dropped(self):
        """Callers whose window has elapsed stop occupying memory."""
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(5, 60, clock=clock)
        for i in range(10):
            limiter.check(f"user_{i}")
        assert limiter.tracked_keys == 10
        clock.now += 61

        limiter.check("user_new")

        assert limiter.tracked_keys == 1
        assert limiter.check("user_0").remaining == 4
