"""Unit tests for the behavior profile TTL cache."""

import threading

from app.utils.profile_cache import ProfileTTLCache


class FakeTime:
    """Deterministic clock used to test expiration logic."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def time(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


def test_set_and_get_updates_hit_miss_counters() -> None:
    cache = ProfileTTLCache(ttl_seconds=10)

    assert cache.get("missing") is None

    cache.set("behavior_profile:alice", {"request_count": 1})

    assert cache.get("behavior_profile:alice") == {"request_count": 1}

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_get_returns_copy() -> None:
    cache = ProfileTTLCache(ttl_seconds=10)
    cache.set("p", {"request_count": 1})

    profile = cache.get("p")
    profile["request_count"] = 99

    assert cache.get("p") == {"request_count": 1}


def test_expired_entry_is_evicted() -> None:
    fake_time = FakeTime()
    cache = ProfileTTLCache(ttl_seconds=5, clock=fake_time.time)
    cache.set("p", {"request_count": 1})

    fake_time.advance(6)

    assert cache.get("p") is None
    assert cache.stats()["evictions"] == 1


def test_lru_eviction_removes_least_recently_used() -> None:
    cache = ProfileTTLCache(ttl_seconds=100, max_entries=2)
    cache.set("a", {"v": 1})
    cache.set("b", {"v": 2})

    # Access "a" so that "b" becomes least recently used
    assert cache.get("a") == {"v": 1}

    cache.set("c", {"v": 3})

    assert cache.get("a") == {"v": 1}
    assert cache.get("c") == {"v": 3}
    assert cache.get("b") is None


def test_delete_and_clear() -> None:
    cache = ProfileTTLCache(ttl_seconds=10)
    cache.set("a", {"v": 1})
    cache.set("b", {"v": 2})
    cache.get("a")

    cache.delete("a")
    assert cache.get("a") is None

    cache.clear()

    stats = cache.stats()
    assert stats["entries"] == 0
    assert stats["hits"] == 0
    assert stats["misses"] == 0


def test_thread_safety_under_concurrent_sets() -> None:
    cache = ProfileTTLCache(ttl_seconds=30, max_entries=None)
    total_keys = 50

    def worker(start: int) -> None:
        for i in range(start, start + total_keys):
            cache.set(f"behavior_profile:{i}", {"request_count": i})

    threads = [threading.Thread(target=worker, args=(n * total_keys,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert cache.stats()["entries"] == total_keys * 4
