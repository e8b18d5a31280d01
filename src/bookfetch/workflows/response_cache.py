"""In-memory TTL + LRU cache for assembled records."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import CacheWriteFailure

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    payload: Any
    created_at: float
    expires_at: float
    last_accessed_at: float
    access_count: int = 0
    approx_size_bytes: int = 0

    def expired(self, now: float) -> bool:
        return now > self.expires_at


def estimate_size(payload: Any) -> int:
    """Approximate payload size from its JSON serialisation (informational only)."""

    to_dict = getattr(payload, "to_dict", None)
    data = to_dict() if callable(to_dict) else payload
    try:
        return len(json.dumps(data, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        return 0


class ResponseCache:
    """Bounded cache with lazy expiry on read, periodic sweep and LRU eviction.

    Effective TTL is ``min(ttl, max_age)``. Eviction removes exactly the
    least-recently-accessed entry when a new key arrives at capacity. Every
    mutation, including lazy expiry during ``get``, happens under one lock so
    a read racing the background sweep sees a consistent entry.
    """

    def __init__(
        self,
        *,
        max_entries: int,
        default_ttl: float,
        max_age: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if default_ttl <= 0 or max_age <= 0:
            raise ValueError("default_ttl and max_age must be positive")
        self.max_entries = int(max_entries)
        self.default_ttl = float(default_ttl)
        self.max_age = float(max_age)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._counters: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "evictions": 0,
            "expired": 0,
            "sweeps": 0,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._counters["misses"] += 1
                return None
            if entry.expired(now):
                del self._entries[key]
                self._counters["expired"] += 1
                self._counters["misses"] += 1
                logger.debug("cache entry %s expired on read", key)
                return None
            entry.last_accessed_at = now
            entry.access_count += 1
            self._counters["hits"] += 1
            return entry.payload

    def has(self, key: str) -> bool:
        """Expiry-aware membership test that leaves access data untouched."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.expired(now)

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> CacheEntry:
        effective = self.default_ttl if ttl is None else float(ttl)
        if effective <= 0:
            raise CacheWriteFailure(f"unusable ttl {ttl!r} for {key}")
        effective = min(effective, self.max_age)
        size = estimate_size(payload)
        now = self._clock()
        with self._lock:
            if self._closed:
                raise CacheWriteFailure(f"cache closed; cannot store {key}")
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_lru()
            entry = CacheEntry(
                key=key,
                payload=payload,
                created_at=now,
                expires_at=now + effective,
                last_accessed_at=now,
                access_count=0,
                approx_size_bytes=size,
            )
            self._entries[key] = entry
            self._counters["sets"] += 1
        return entry

    def _evict_lru(self) -> None:
        # Caller holds the lock.
        victim = min(self._entries.values(), key=lambda item: item.last_accessed_at)
        del self._entries[victim.key]
        self._counters["evictions"] += 1
        logger.debug("cache evicted %s (last access %.3f)", victim.key, victim.last_accessed_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._counters["deletes"] += 1
            return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._counters["deletes"] += count
            return count

    def sweep(self) -> int:
        """Delete every expired entry; returns how many were removed."""

        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in stale:
                del self._entries[key]
            self._counters["expired"] += len(stale)
            self._counters["sweeps"] += 1
        if stale:
            logger.debug("cache sweep removed %d expired entries", len(stale))
        return len(stale)

    def entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            size = len(self._entries)
            total_bytes = sum(entry.approx_size_bytes for entry in self._entries.values())
        lookups = counters["hits"] + counters["misses"]
        return {
            **counters,
            "size": size,
            "max_entries": self.max_entries,
            "total_bytes": total_bytes,
            "average_entry_bytes": round(total_bytes / size, 1) if size else 0.0,
            "hit_rate": round(counters["hits"] / lookups, 4) if lookups else 0.0,
        }

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self, interval: float) -> bool:
        """Run ``sweep`` every ``interval`` seconds on a daemon thread."""

        if interval <= 0:
            return False
        with self._lock:
            if self._closed or (self._sweeper is not None and self._sweeper.is_alive()):
                return False
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(float(interval),),
                name="bookfetch-cache-sweeper",
                daemon=True,
            )
            self._sweeper.start()
        return True

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.sweep()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            sweeper = self._sweeper
            self._sweeper = None
        self._stop.set()
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=1.0)

    @property
    def closed(self) -> bool:
        return self._closed


__all__ = ["CacheEntry", "ResponseCache", "estimate_size"]
