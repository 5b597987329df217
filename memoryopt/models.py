from __future__ import annotations

"""Data model shared by the cache, batch and aggregation components."""

import time
from dataclasses import dataclass, field
from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

MemoryType = Literal["message", "facts", "document", "entity", "custom"]
OperationKind = Literal["create", "retrieve", "search", "update", "delete"]
OPERATION_KINDS: tuple[str, ...] = ("create", "retrieve", "search", "update", "delete")


class MemoryContent(BaseModel):
    text: str = ""
    source: str | None = None
    actions: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class MemoryMetadata(BaseModel):
    type: MemoryType = "custom"
    source: str | None = None
    timestamp: float | None = None

    model_config = ConfigDict(extra="allow")


class MemoryRecord(BaseModel):
    """Transient copy of a record owned by the external store."""

    id: str | None = None
    entity_id: str | None = None
    room_id: str | None = None
    content: MemoryContent = Field(default_factory=MemoryContent)
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)
    embedding: List[float] | None = None
    created_at: float | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def text(self) -> str:
        return self.content.text or ""

    def has_embedding(self) -> bool:
        return bool(self.embedding)


RecordList = TypeAdapter(List[MemoryRecord])


@dataclass
class CacheEntry:
    key: str
    value: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass
class BatchResult:
    """Outcome of a batch update or delete.

    ``success`` is only true when every item succeeded; partial failure is
    reported through ``errors`` instead of an exception.
    """

    success: bool
    count: int
    successes: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return self.count

    @property
    def deleted_count(self) -> int:
        return self.count


@dataclass
class ContextMetadata:
    total_memories: int
    cache_hit: bool
    query_time_ms: float
    distributed_used: bool = False


@dataclass
class ContextResult:
    messages: List[MemoryRecord]
    facts: List[MemoryRecord]
    entities: List[MemoryRecord]
    context: str
    metadata: ContextMetadata


@dataclass
class BusEvent:
    type: str
    data: Any
    source: str
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BusEvent":
        return cls(
            type=payload.get("type", ""),
            data=payload.get("data"),
            source=payload.get("source", ""),
            timestamp=payload.get("timestamp") or time.time(),
            metadata=payload.get("metadata"),
        )


__all__ = [
    "MemoryType",
    "OperationKind",
    "OPERATION_KINDS",
    "MemoryContent",
    "MemoryMetadata",
    "MemoryRecord",
    "RecordList",
    "CacheEntry",
    "BatchResult",
    "ContextMetadata",
    "ContextResult",
    "BusEvent",
]
