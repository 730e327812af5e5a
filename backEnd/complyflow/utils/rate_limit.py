"""
Fixed-window rate limiting for operator-triggered actions.

Each caller gets a counter that resets once its window has elapsed. Requests
beyond the limit are rejected with the time left until the window resets.
Counters are held in process memory, so limits are per worker. Expired
windows are dropped at most once per window length.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

from ..errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    """Outcome of a rate-limit check."""

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after_seconds: float


@dataclass
class _Window:
    started_at: float
    count: int


class FixedWindowRateLimiter:
    """Fixed-window counter keyed by caller identity."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_purge = clock() + window_seconds

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def check(self, key: str) -> RateLimitDecision:
        """
        Count a request for key and decide whether it may proceed.

        Args:
            key: Caller identity (user id, API client id, ...)

        Returns:
            RateLimitDecision describing the outcome
        """
        now = self._clock()
        with self._lock:
            if now >= self._next_purge:
                self._purge_expired(now)
            window = self._windows.get(key)
            if window is None or now >= window.started_at + self.window_seconds:
                window = _Window(started_at=now, count=0)
                self._windows[key] = window

            reset_ts = window.started_at + self.window_seconds
            reset_at = datetime.fromtimestamp(reset_ts, tz=timezone.utc)

            if window.count >= self.limit:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after_seconds=max(0.0, reset_ts - now),
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self.limit - window.count,
                reset_at=reset_at,
                retry_after_seconds=0.0,
            )

    def hit(self, key: str) -> RateLimitDecision:
        """Like check, but raises RateLimitExceeded when the request is refused."""
        decision = self.check(key)
        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded for {key}; resets in {decision.retry_after_seconds:.1f}s"
            )
            raise RateLimitExceeded(key, decision.retry_after_seconds, decision.reset_at)
        return decision

    def _purge_expired(self, now: float) -> None:
        # Caller holds the lock. Runs at most once per window.
        expired = [k for k, w in self._windows.items() if now >= w.started_at + self.window_seconds]
        for k in expired:
            del self._windows[k]
        self._next_purge = now + self.window_seconds
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate-limit window(s)")

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
