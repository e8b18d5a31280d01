import itertools
import threading

import pytest

from bookfetch.workflows.errors import CacheWriteFailure
from bookfetch.workflows.response_cache import ResponseCache, estimate_size


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _cache(clock, **kwargs):
    params = {"max_entries": 3, "default_ttl": 60.0, "max_age": 300.0}
    params.update(kwargs)
    return ResponseCache(clock=clock, **params)


def test_get_returns_payload_until_expiry_then_counts_a_miss():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("k", {"title": "A"})
    assert cache.get("k") == {"title": "A"}
    clock.advance(61)
    assert cache.get("k") is None
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["expired"] == 1
    assert stats["size"] == 0


def test_ttl_is_clamped_to_max_age():
    clock = FakeClock()
    cache = _cache(clock, max_age=100.0)
    entry = cache.set("k", "v", ttl=10_000)
    assert entry.expires_at == clock.now + 100.0


@pytest.mark.parametrize("ttl", [0, -5])
def test_unusable_ttl_raises_cache_write_failure(ttl):
    cache = _cache(FakeClock())
    with pytest.raises(CacheWriteFailure):
        cache.set("k", "v", ttl=ttl)


def test_lru_eviction_removes_exactly_one_least_recently_accessed_entry():
    clock = FakeClock()
    cache = _cache(clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)
        clock.advance(1)
    cache.get("a")
    clock.advance(1)
    cache.set("d", "d")
    assert not cache.has("b")
    assert all(cache.has(key) for key in ("a", "c", "d"))
    assert cache.stats()["evictions"] == 1


def test_overwriting_existing_key_at_capacity_does_not_evict():
    clock = FakeClock()
    cache = _cache(clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)
    cache.set("b", "B")
    assert len(cache) == 3
    assert cache.get("b") == "B"
    assert cache.stats()["evictions"] == 0


def test_has_is_expiry_aware_and_does_not_touch_access_data():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("k", "v")
    before = cache.entry("k")
    assert cache.has("k")
    assert cache.entry("k").access_count == before.access_count == 0
    clock.advance(61)
    assert not cache.has("k")


def test_get_updates_access_bookkeeping():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("k", "v")
    clock.advance(5)
    cache.get("k")
    entry = cache.entry("k")
    assert entry.access_count == 1
    assert entry.last_accessed_at == clock.now


def test_sweep_removes_only_expired_entries():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("short", 1, ttl=10)
    cache.set("long", 2, ttl=100)
    clock.advance(11)
    assert cache.sweep() == 1
    assert cache.has("long")
    assert cache.stats()["sweeps"] == 1


def test_delete_and_clear():
    cache = _cache(FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    assert cache.clear() == 1
    assert len(cache) == 0


def test_stats_report_sizes_and_hit_rate():
    cache = _cache(FakeClock())
    cache.set("a", {"title": "x" * 20})
    cache.get("a")
    cache.get("missing")
    stats = cache.stats()
    assert stats["total_bytes"] == estimate_size({"title": "x" * 20}) > 0
    assert stats["average_entry_bytes"] == stats["total_bytes"]
    assert stats["hit_rate"] == 0.5
    assert stats["max_entries"] == 3


def test_estimate_size_prefers_to_dict():
    class Payload:
        def to_dict(self):
            return {"a": 1}

    assert estimate_size(Payload()) == len('{"a": 1}')


def test_closed_cache_rejects_writes_and_stops_sweeper():
    cache = _cache(FakeClock())
    assert cache.start_sweeper(60.0) is True
    assert cache.start_sweeper(60.0) is False
    cache.close()
    assert cache.closed
    with pytest.raises(CacheWriteFailure):
        cache.set("k", "v")
    assert cache.start_sweeper(60.0) is False


def test_sweeper_disabled_for_non_positive_interval():
    assert _cache(FakeClock()).start_sweeper(0) is False


def test_constructor_validates_limits():
    with pytest.raises(ValueError):
        ResponseCache(max_entries=0, default_ttl=1, max_age=1)
    with pytest.raises(ValueError):
        ResponseCache(max_entries=1, default_ttl=0, max_age=1)


def test_concurrent_get_set_and_sweep_keep_bounds_and_counters():
    ticks = itertools.count()
    cache = ResponseCache(max_entries=16, default_ttl=1.0, max_age=5.0, clock=lambda: next(ticks) * 0.01)
    sizes = []
    reads = {"hits": 0, "misses": 0}
    reads_lock = threading.Lock()

    def writer(worker):
        for n in range(300):
            cache.set(f"w{worker}-{n}", n)
            sizes.append(len(cache))

    def reader(worker):
        hits = misses = 0
        for n in range(300):
            if cache.get(f"w{(worker + n) % 4}-{n}") is None:
                misses += 1
            else:
                hits += 1
        with reads_lock:
            reads["hits"] += hits
            reads["misses"] += misses

    def sweeper():
        for _ in range(100):
            cache.sweep()
            sizes.append(len(cache))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
    threads += [threading.Thread(target=reader, args=(i,)) for i in range(4)]
    threads.append(threading.Thread(target=sweeper))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stats = cache.stats()
    assert max(sizes) <= 16
    assert stats["size"] <= 16
    assert stats["sets"] == 1200
    assert stats["hits"] == reads["hits"]
    assert stats["misses"] == reads["misses"]
    assert stats["hits"] + stats["misses"] == 1200
    assert stats["sweeps"] == 100
    # Every stored key is still present, evicted or expired exactly once.
    assert stats["sets"] == stats["size"] + stats["evictions"] + stats["expired"]
