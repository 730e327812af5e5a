"""Shared utilities: bounded polling, TTL cache, fixed-window rate limiting."""

from .cache import TTLCache
from .polling import poll_until
from .rate_limit import FixedWindowRateLimiter, RateLimitDecision

__all__ = ["FixedWindowRateLimiter", "RateLimitDecision", "TTLCache", "poll_until"]
