from __future__ import annotations

"""Bounded in-process cache with LRU eviction and TTL expiry."""

import time
from collections import OrderedDict
from typing import Any, Callable

import structlog

from .models import CacheEntry

logger = structlog.get_logger(__name__)

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL = 300.0


class LocalCache:
    """Fixed-capacity, recency-ordered cache of query results.

    ``get`` moves an entry to the most-recently-used position but does not
    refresh its age; an entry older than its TTL is dropped and reported as a
    miss.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl: float = DEFAULT_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.expired(self._clock())

    def keys(self) -> list[str]:
        return list(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, timestamp=self._clock(), ttl=ttl or self.ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("cache_evict", key=evicted)

    def invalidate(self, pattern: str | None = None) -> int:
        """Drop entries whose key contains ``pattern``; everything when omitted."""
        if pattern is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        doomed = [k for k in self._entries if pattern in k]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        doomed = [k for k, e in self._entries.items() if e.expired(now)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def reset_stats(self) -> None:
        self.hits = self.misses = self.evictions = 0

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl": self.ttl,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "miss_rate": self.misses / lookups if lookups else 0.0,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }


__all__ = ["LocalCache", "DEFAULT_MAX_SIZE", "DEFAULT_TTL"]
