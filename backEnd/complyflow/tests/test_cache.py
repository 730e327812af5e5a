"""Tests for the TTL cache."""

from complyflow.utils import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Tests for TTLCache."""

    def test_get_before_and_after_expiry(self):
        """Entries expire once their TTL has elapsed."""
        clock = FakeClock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("rules", {"a": 1})

        clock.now += 9.9
        assert cache.get("rules") == {"a": 1}
        clock.now += 0.1
        assert cache.get("rules") is None

    def test_get_or_set_calls_factory_once(self):
        """The factory runs only on a miss."""
        cache = TTLCache()
        calls = []

        def factory():
            calls.append(1)
            return "value"

        assert cache.get_or_set("k", factory) == "value"
        assert cache.get_or_set("k", factory) == "value"
        assert len(calls) == 1

    def test_invalidate_prefix(self):
        """Prefix invalidation removes only matching keys."""
        cache = TTLCache()
        cache.set("model:a", 1)
        cache.set("model:b", 2)
        cache.set("rules:x", 3)

        assert cache.invalidate_prefix("model:") == 2
        assert cache.get("rules:x") == 3
        assert len(cache) == 1

    def test_invalidate_and_purge(self):
        """Explicit invalidation and purge of expired entries."""
        clock = FakeClock()
        cache = TTLCache(default_ttl=5, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl=100)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        clock.now += 200
        assert cache.purge_expired() == 1
        assert len(cache) == 0
