from __future__ import annotations

"""Read-through caching in front of the memory store."""

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, List, Literal, Mapping

import structlog

from .cache import LocalCache
from .distributed import DistributedCache, escape_glob
from .keys import KEY_PREFIX, encode_key, key_fragment
from .models import MemoryRecord

logger = structlog.get_logger(__name__)

QueryKind = Literal["memories", "search"]


@dataclass
class CacheLookup:
    records: List[MemoryRecord]
    hit: bool


class CachedMemories:
    """Check the local cache, then Redis, then the store.

    A distributed hit warms the local cache; a store result is written to
    both tiers. Concurrent misses on the same key wait on one store call.
    Store errors propagate unchanged.
    """

    def __init__(
        self,
        store: Any,
        cache: LocalCache,
        distributed: DistributedCache | None = None,
        metrics: Any | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.distributed = distributed
        self.metrics = metrics
        self._inflight: dict[str, asyncio.Future] = {}

    @property
    def distributed_connected(self) -> bool:
        return self.distributed is not None and self.distributed.connected

    @staticmethod
    def key_for(kind: QueryKind, params: Mapping[str, Any]) -> str:
        if kind == "search":
            return encode_key({**params, "query": "search"})
        return encode_key(params)

    def _track(self, kind: QueryKind):
        if self.metrics is None:
            return nullcontext()
        return self.metrics.track("search" if kind == "search" else "retrieve")

    async def _load(self, kind: QueryKind, key: str, params: Mapping[str, Any]) -> List[MemoryRecord] | None:
        if kind == "search":
            records = await self.store.search_memories(params)
        else:
            records = await self.store.get_memories(params)
        if not isinstance(records, (list, tuple)):
            logger.warning("store_result_not_a_list", kind=kind, result_type=type(records).__name__)
            return None
        records = list(records)
        self.cache.set(key, records)
        if self.distributed_connected:
            await self.distributed.set_records(key, records)
        return records

    def _load_once(self, kind: QueryKind, key: str, params: Mapping[str, Any]) -> asyncio.Future:
        """Return the running store load for ``key``, starting one if needed."""
        task = self._inflight.get(key)
        if task is not None:
            logger.debug("cache_miss_joined", key=key)
            return task
        task = asyncio.ensure_future(self._load(kind, key, params))
        self._inflight[key] = task

        def _done(finished: asyncio.Future) -> None:
            if self._inflight.get(key) is finished:
                del self._inflight[key]

        task.add_done_callback(_done)
        return task

    async def fetch(self, kind: QueryKind, params: Mapping[str, Any]) -> CacheLookup:
        key = self.key_for(kind, params)
        with self._track(kind):
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("cache_hit", tier="local", key=key)
                return CacheLookup(list(cached), True)
            if self.distributed_connected:
                remote = await self.distributed.get_records(key)
                if remote is not None:
                    logger.debug("cache_hit", tier="distributed", key=key)
                    self.cache.set(key, remote)
                    return CacheLookup(list(remote), True)
            logger.debug("cache_miss", key=key)
            # concurrent misses on one key share a single store call
            records = await asyncio.shield(self._load_once(kind, key, params))
            return CacheLookup(list(records or []), False)

    async def get_cached_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        return (await self.fetch("memories", params)).records

    async def get_cached_search_results(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        return (await self.fetch("search", params)).records

    async def invalidate_related(self, table: str | None = None, room_id: str | None = None) -> int:
        """Drop cached queries that mention ``table`` or ``room_id``."""
        fragments = []
        if table is not None:
            fragments.append(key_fragment("table_name", table))
        if room_id is not None:
            fragments.append(key_fragment("room_id", room_id))
        removed = 0
        for fragment in fragments:
            removed += self.cache.invalidate(fragment)
            if self.distributed_connected:
                removed += await self.distributed.delete_pattern(f"*{escape_glob(fragment)}*")
        logger.debug("cache_invalidated", table=table, room_id=room_id, removed=removed)
        return removed

    async def invalidate_all(self) -> int:
        removed = self.cache.invalidate(KEY_PREFIX)
        if self.distributed_connected:
            removed += await self.distributed.delete_pattern(f"{escape_glob(KEY_PREFIX)}*")
        logger.debug("cache_invalidated", scope="all", removed=removed)
        return removed

    async def clear(self, pattern: str | None = None) -> int:
        """Clear both tiers, or only keys containing ``pattern``."""
        removed = self.cache.invalidate(pattern)
        if self.distributed_connected:
            if pattern is None:
                removed += await self.distributed.clear()
            else:
                removed += await self.distributed.delete_pattern(f"*{escape_glob(pattern)}*")
        logger.info("cache_cleared", pattern=pattern, removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            "local": self.cache.stats(),
            "distributed": {"connected": self.distributed_connected},
        }


__all__ = ["CacheLookup", "CachedMemories", "QueryKind"]
