from __future__ import annotations

"""Interface to the persistent memory store plus an in-process implementation."""

import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Protocol, runtime_checkable

import numpy as np
import structlog

from .errors import StoreCapabilityError
from .models import MemoryRecord

logger = structlog.get_logger(__name__)


class StoreCapability(str, Enum):
    BATCH_CREATE = "batch_create"
    SEARCH = "search"
    UPDATE = "update"
    DELETE = "delete"


ALL_CAPABILITIES = frozenset(StoreCapability)


@runtime_checkable
class MemoryStore(Protocol):
    """Operations the optimization layer needs from a store.

    ``create_memories_batch`` is only called when ``BATCH_CREATE`` is part of
    ``capabilities``. Query parameters are plain mappings using the names
    ``table_name``, ``room_id``, ``entity_id``, ``count``, ``start``, ``end``
    and, for searches, ``embedding`` and ``match_threshold``.
    """

    capabilities: frozenset[StoreCapability]

    async def get_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]: ...

    async def search_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]: ...

    async def create_memory(self, record: MemoryRecord, table: str, unique: bool = True) -> str: ...

    async def create_memories_batch(
        self, records: List[MemoryRecord], table: str, unique: bool = True
    ) -> List[str]: ...

    async def update_memory(self, partial: Mapping[str, Any]) -> bool: ...

    async def delete_memory(self, memory_id: str) -> None: ...


def _cosine(matrix: np.ndarray, vec: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vec)
    norms[norms == 0] = 1.0
    return matrix @ vec / norms


class InMemoryMemoryStore:
    """Simple in-memory store used for tests and local runs.

    With ``unique`` set, creating a record whose room and text match an
    existing record in the same table returns the existing id.
    """

    def __init__(self, capabilities: Iterable[StoreCapability] = ALL_CAPABILITIES) -> None:
        self.capabilities = frozenset(capabilities)
        self._tables: Dict[str, List[MemoryRecord]] = {}

    def _require(self, capability: StoreCapability) -> None:
        if capability not in self.capabilities:
            raise StoreCapabilityError(f"store does not support {capability.value}")

    def _locate(self, memory_id: str) -> tuple[str, int] | None:
        for table, rows in self._tables.items():
            for idx, row in enumerate(rows):
                if row.id == memory_id:
                    return table, idx
        return None

    def all(self, table: str) -> List[MemoryRecord]:
        return list(self._tables.get(table, []))

    async def get_memory(self, memory_id: str) -> MemoryRecord | None:
        found = self._locate(memory_id)
        if found is None:
            return None
        table, idx = found
        return self._tables[table][idx]

    async def count_memories(self, table: str, room_id: str | None = None) -> int:
        return sum(1 for r in self._tables.get(table, []) if room_id is None or r.room_id == room_id)

    def _filter(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        rows = self._tables.get(params.get("table_name") or "", [])
        room_id = params.get("room_id")
        entity_id = params.get("entity_id")
        start = params.get("start")
        end = params.get("end")
        return [
            r
            for r in rows
            if (room_id is None or r.room_id == room_id)
            and (entity_id is None or r.entity_id == entity_id)
            and (start is None or (r.created_at or 0) >= start)
            and (end is None or (r.created_at or 0) <= end)
        ]

    async def get_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        rows = self._filter(params)
        count = params.get("count")
        return rows[-count:] if count else rows

    async def search_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        self._require(StoreCapability.SEARCH)
        query = params.get("embedding")
        if not query:
            return []
        rows = [r for r in self._filter(params) if r.has_embedding() and len(r.embedding) == len(query)]
        if not rows:
            return []
        scores = _cosine(np.asarray([r.embedding for r in rows], dtype="float32"), np.asarray(query, dtype="float32"))
        threshold = params.get("match_threshold", 0.0) or 0.0
        order = [i for i in np.argsort(-scores) if scores[i] >= threshold]
        count = params.get("count") or len(order)
        return [rows[i] for i in order[:count]]

    async def create_memory(self, record: MemoryRecord, table: str, unique: bool = True) -> str:
        rows = self._tables.setdefault(table, [])
        if unique:
            for row in rows:
                if row.room_id == record.room_id and row.text == record.text:
                    return row.id  # type: ignore[return-value]
        stored = record.model_copy(
            update={
                "id": record.id or str(uuid.uuid4()),
                "created_at": record.created_at or time.time(),
            },
            deep=True,
        )
        rows.append(stored)
        return stored.id  # type: ignore[return-value]

    async def create_memories_batch(
        self, records: List[MemoryRecord], table: str, unique: bool = True
    ) -> List[str]:
        self._require(StoreCapability.BATCH_CREATE)
        return [await self.create_memory(r, table, unique) for r in records]

    async def update_memory(self, partial: Mapping[str, Any]) -> bool:
        self._require(StoreCapability.UPDATE)
        memory_id = partial.get("id")
        found = self._locate(memory_id) if memory_id else None
        if found is None:
            return False
        table, idx = found
        current = self._tables[table][idx]
        merged = {**current.model_dump(), **{k: v for k, v in partial.items() if k != "id"}}
        self._tables[table][idx] = MemoryRecord.model_validate(merged)
        return True

    async def delete_memory(self, memory_id: str) -> None:
        self._require(StoreCapability.DELETE)
        found = self._locate(memory_id)
        if found is None:
            raise KeyError(memory_id)
        table, idx = found
        del self._tables[table][idx]
        logger.debug("memory_deleted", id=memory_id, table=table)


__all__ = [
    "ALL_CAPABILITIES",
    "InMemoryMemoryStore",
    "MemoryStore",
    "StoreCapability",
]
