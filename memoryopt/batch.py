from __future__ import annotations

"""Batched create, update and delete with per-record fallbacks."""

import asyncio
from contextlib import nullcontext
from typing import Any, Iterable, List, Mapping, Sequence

import structlog

from .models import BatchResult, MemoryRecord
from .retrieval import CachedMemories
from .store import StoreCapability
from .tracing import async_span

logger = structlog.get_logger(__name__)


def _as_partial(update: Mapping[str, Any] | MemoryRecord) -> dict[str, Any]:
    """Return only the fields the caller set; an empty embedding is dropped."""
    if isinstance(update, MemoryRecord):
        partial = update.model_dump(exclude_unset=True, exclude_none=True)
        partial["id"] = update.id
    else:
        partial = dict(update)
    if "embedding" in partial and (partial["embedding"] is None or len(partial["embedding"]) == 0):
        del partial["embedding"]
        logger.warning("empty_embedding_dropped", id=partial.get("id"))
    return partial


class BatchOperations:
    """Coordinate multi-record mutations against the store.

    Creates prefer the store's batch call and fall back to individual creates;
    updates and deletes always run concurrently and report partial failure in
    the returned :class:`BatchResult` instead of raising.
    """

    def __init__(self, store: Any, retrieval: CachedMemories, metrics: Any | None = None) -> None:
        self.store = store
        self.retrieval = retrieval
        self.metrics = metrics

    def _track(self, kind: str):
        return self.metrics.track(kind) if self.metrics is not None else nullcontext()

    @property
    def supports_batch_create(self) -> bool:
        return StoreCapability.BATCH_CREATE in getattr(self.store, "capabilities", frozenset())

    async def _invalidate_for(self, table: str, records: Iterable[MemoryRecord]) -> None:
        await self.retrieval.invalidate_related(table=table)
        for room_id in {r.room_id for r in records if r.room_id is not None}:
            await self.retrieval.invalidate_related(room_id=room_id)

    async def create_batch(
        self, records: Sequence[MemoryRecord], table: str, unique: bool = True
    ) -> List[str]:
        records = list(records)
        if not records:
            return []
        if len(records) == 1:
            with self._track("create"):
                memory_id = await self.store.create_memory(records[0], table, unique)
            await self._invalidate_for(table, records)
            return [memory_id]

        async with async_span("memoryopt.create_batch", table=table, count=len(records)):
            if self.supports_batch_create:
                try:
                    with self._track("create"):
                        ids = list(await self.store.create_memories_batch(records, table, unique))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("batch_create_failed", table=table, count=len(records), error=str(exc))
                    ids = await self._create_sequential(records, table, unique)
            else:
                ids = await self._create_parallel(records, table, unique)
            if ids:
                await self._invalidate_for(table, records)
            logger.info("batch_created", table=table, requested=len(records), created=len(ids))
            return ids

    async def _create_one(self, record: MemoryRecord, table: str, unique: bool) -> str:
        with self._track("create"):
            return await self.store.create_memory(record, table, unique)

    async def _create_sequential(self, records: Sequence[MemoryRecord], table: str, unique: bool) -> List[str]:
        ids: List[str] = []
        for record in records:
            try:
                ids.append(await self._create_one(record, table, unique))
            except Exception as exc:  # noqa: BLE001
                logger.warning("batch_create_record_failed", table=table, error=str(exc))
        return ids

    async def _create_parallel(self, records: Sequence[MemoryRecord], table: str, unique: bool) -> List[str]:
        outcomes = await asyncio.gather(
            *(self._create_one(r, table, unique) for r in records), return_exceptions=True
        )
        slots: List[str | None] = []
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("parallel_create_failed", table=table, error=str(outcome))
                try:
                    slots.append(await self._create_one(record, table, unique))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("batch_create_record_failed", table=table, error=str(exc))
                    slots.append(None)
            else:
                slots.append(outcome)
        return [s for s in slots if s is not None]

    async def update_batch(self, updates: Sequence[Mapping[str, Any] | MemoryRecord]) -> BatchResult:
        partials = [_as_partial(u) for u in updates]
        with self._track("update"):
            outcomes = await asyncio.gather(
                *(self.store.update_memory(p) for p in partials), return_exceptions=True
            )
        successes: List[Any] = []
        errors: List[str] = []
        for partial, outcome in zip(partials, outcomes):
            memory_id = partial.get("id")
            if isinstance(outcome, BaseException):
                errors.append(f"update failed for {memory_id}: {outcome}")
            elif outcome is False:
                errors.append(f"update returned false for {memory_id}")
            else:
                successes.append(memory_id)
        if successes:
            await self.retrieval.invalidate_all()
        if errors:
            logger.warning("batch_update_partial", requested=len(partials), failed=len(errors))
        return BatchResult(
            success=len(successes) == len(partials),
            count=len(successes),
            successes=successes,
            errors=errors,
        )

    async def delete_batch(self, ids: Sequence[str]) -> BatchResult:
        ids = list(ids)
        with self._track("delete"):
            outcomes = await asyncio.gather(
                *(self.store.delete_memory(i) for i in ids), return_exceptions=True
            )
        successes: List[Any] = []
        errors: List[str] = []
        for memory_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                errors.append(f"delete failed for {memory_id}: {outcome!r}")
            elif outcome is False:
                errors.append(f"delete returned false for {memory_id}")
            else:
                successes.append(memory_id)
        if successes:
            await self.retrieval.invalidate_all()
        if errors:
            logger.warning("batch_delete_partial", requested=len(ids), failed=len(errors))
        return BatchResult(
            success=len(successes) == len(ids),
            count=len(successes),
            successes=successes,
            errors=errors,
        )


__all__ = ["BatchOperations"]
