"""In-memory TTL caches.

Used for:
  - Low-balance fleet addresses (minutes TTL) so the slot coordinator
    does not hit the chain for a balance unlikely to have changed
  - Observed buy/sell movements per gamer (one hour TTL) for the
    movement-window predicates

Thread-safe, with lazy eviction of stale entries on access.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterator


@dataclass
class CacheEntry:
    """A single cached value with TTL."""
    value: Any
    created_at: float
    ttl_secs: float

    def is_expired(self, now: float) -> bool:
        return (now - self.created_at) > self.ttl_secs


class TTLCache:
    """Thread-safe TTL cache with an optional entry cap (oldest evicted)."""

    def __init__(
        self,
        default_ttl_secs: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._default_ttl = default_ttl_secs
        self._max_entries = max_entries
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def put(self, key: str, value: Any = True, ttl_secs: float | None = None) -> None:
        ttl = self._default_ttl if ttl_secs is None else ttl_secs
        with self._lock:
            self._entries.pop(key, None)
            self._evict_expired()
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(value=value, created_at=self._clock(), ttl_secs=ttl)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def invalidate(self, key: str) -> bool:
        """Remove a specific key. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> Iterator[str]:
        with self._lock:
            self._evict_expired()
            return iter(list(self._entries))

    def _evict_expired(self) -> None:
        """Remove all expired entries. Must be called with lock held."""
        now = self._clock()
        expired = [k for k, v in self._entries.items() if v.is_expired(now)]
        for k in expired:
            del self._entries[k]

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._entries)

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 3) if total > 0 else 0.0,
            }
