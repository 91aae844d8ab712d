"""
Tests for the retry policy and the TTL cache.
"""

import threading

import pytest

from docs_search.errors import ProviderUnavailable
from docs_search.utils.cache import CacheEntry, TTLCache
from docs_search.utils.retry import RetryPolicy


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_success_first_try(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, sleep=sleeps.append)

        assert policy.call(lambda: 42) == 42
        assert sleeps == []

    def test_backoff_delays(self):
        sleeps = []
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleeps.append)

        assert policy.call(flaky) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_exhausted(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=4, base_delay=0.5, sleep=sleeps.append)
        error = TimeoutError("slow")

        def always_fails():
            raise error

        with pytest.raises(ProviderUnavailable) as exc_info:
            policy.call(always_fails, description="Test call")

        # No sleep after the final attempt
        assert sleeps == [0.5, 1.0, 2.0]
        assert exc_info.value.last_error is error
        assert "Test call failed after 4 attempts" in str(exc_info.value)

    def test_non_retryable_propagates(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, retry_on=(ConnectionError,), sleep=sleeps.append)

        def bad_input():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            policy.call(bad_input)
        assert sleeps == []

    def test_delay_for(self):
        policy = RetryPolicy(base_delay=2.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestTTLCache:
    """Tests for the TTL cache with an injected clock."""

    def test_get_set(self):
        cache = TTLCache(ttl=10, clock=FakeClock())

        cache.set("key", [1, 2, 3])

        assert cache.get("key") == [1, 2, 3]
        assert "key" in cache
        assert len(cache) == 1

    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("key", "value")

        clock.now = 9.9
        assert cache.get("key") == "value"

        clock.now = 10.0
        assert cache.get("key") is None
        assert "key" not in cache
        assert len(cache) == 0

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)

        clock.now = 5
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_overwrite_replaces_entry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("key", "old")

        clock.now = 8
        cache.set("key", "new")
        clock.now = 15

        assert cache.get("key") == "new"

    def test_purge_expired(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl=100)

        clock.now = 50

        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_stats(self):
        cache = TTLCache(ttl=10, clock=FakeClock())
        cache.set("a", 1)

        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3)
        assert stats["size"] == 1

    def test_clear(self):
        cache = TTLCache(ttl=10, clock=FakeClock())
        cache.set("a", 1)
        cache.get("a")

        cache.clear()

        assert len(cache) == 0
        assert cache.stats()["hits"] == 0

    def test_entries_are_immutable(self):
        entry = CacheEntry(value=1, expires_at=5.0)

        with pytest.raises(AttributeError):
            entry.value = 2

    def test_concurrent_writes(self):
        cache = TTLCache(ttl=60, clock=FakeClock())

        def writer(offset):
            for i in range(200):
                cache.set(offset + i, i)

        threads = [threading.Thread(target=writer, args=(n * 1000,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 800
