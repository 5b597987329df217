from __future__ import annotations

"""Wiring of the optimization components around one store."""

from typing import Any, Dict, List, Mapping, Sequence

import structlog

from .batch import BatchOperations
from .bus import MessageBus
from .cache import LocalCache
from .config import Settings
from .context import ContextualMemories
from .distributed import DistributedCache, DistributedCacheConfig
from .embedding import EmbeddingModel, HashEmbeddingModel, HTTPEmbeddingModel, LazyEmbedder
from .log import configure_logging
from .metrics import MetricsCollector
from .models import BatchResult, ContextResult, MemoryRecord
from .retrieval import CachedMemories
from .tracing import configure_tracing

logger = structlog.get_logger(__name__)


def setup_observability(settings: Settings) -> None:
    """Install structlog output and, when configured, OTLP span export."""
    configure_logging(settings.log_level)
    if settings.otel_trace_url:
        configure_tracing(settings.otel_trace_url, service_name=settings.service_id)


def embedding_model_from_settings(settings: Settings) -> EmbeddingModel:
    if settings.embedding_url:
        return HTTPEmbeddingModel(
            settings.embedding_url,
            model=settings.embedding_model,
            api_key=settings.embedding_api_key,
            dims=settings.embedding_dims,
        )
    return HashEmbeddingModel(settings.embedding_dims or 64)


class MemorySystem:
    """One isolated set of caches, metrics and coordinators.

    Use as an async context manager, or call :meth:`start` and
    :meth:`dispose` explicitly::

        async with MemorySystem(store, HashEmbeddingModel()) as memory:
            ids = await memory.create_batch(records, "facts")
    """

    def __init__(
        self,
        store: Any,
        embedder: EmbeddingModel,
        settings: Settings | None = None,
        distributed: DistributedCache | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.cache = LocalCache(self.settings.cache_max_size, self.settings.cache_ttl)
        self.metrics = MetricsCollector(self.cache, self.settings.metrics_window)
        self.distributed = distributed
        self.retrieval = CachedMemories(store, self.cache, distributed, self.metrics)
        self.embedder = LazyEmbedder(
            store, embedder, self.metrics, dims=self.settings.embedding_dims, retrieval=self.retrieval
        )
        self.batch = BatchOperations(store, self.retrieval, self.metrics)
        self.context = ContextualMemories(self.retrieval, self.embedder)
        self.bus = (
            MessageBus(distributed, self.settings.service_id, self.settings.bus_channel_prefix)
            if distributed is not None
            else None
        )

    @classmethod
    def from_settings(
        cls,
        store: Any,
        embedder: EmbeddingModel | None = None,
        settings: Settings | None = None,
    ) -> "MemorySystem":
        settings = settings or Settings.load()
        distributed = (
            DistributedCache(DistributedCacheConfig.from_settings(settings))
            if settings.distributed_enabled
            else None
        )
        return cls(store, embedder or embedding_model_from_settings(settings), settings, distributed)

    # ---------- lifecycle ----------
    async def start(self) -> None:
        if self.distributed is not None and await self.distributed.connect():
            await self.bus.initialize()
        logger.info(
            "memory_system_started",
            service_id=self.settings.service_id,
            distributed=self.retrieval.distributed_connected,
        )

    async def dispose(self) -> None:
        if self.bus is not None and self.bus.initialized:
            await self.bus.shutdown()
        if self.distributed is not None:
            await self.distributed.disconnect()
        logger.info("memory_system_disposed", service_id=self.settings.service_id)

    async def __aenter__(self) -> "MemorySystem":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    # ---------- cache management ----------
    async def clear(self, pattern: str | None = None) -> int:
        return await self.retrieval.clear(pattern)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.retrieval.stats(),
            "metrics": self.metrics.snapshot(),
            "bus": self.bus.stats() if self.bus is not None else None,
        }

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def reset(self) -> None:
        self.metrics.reset()

    # ---------- operations ----------
    async def get_cached_memories(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        return await self.retrieval.get_cached_memories(params)

    async def get_cached_search_results(self, params: Mapping[str, Any]) -> List[MemoryRecord]:
        return await self.retrieval.get_cached_search_results(params)

    async def create_batch(self, records: Sequence[MemoryRecord], table: str, unique: bool = True) -> List[str]:
        return await self.batch.create_batch(records, table, unique)

    async def update_batch(self, updates: Sequence[Mapping[str, Any] | MemoryRecord]) -> BatchResult:
        return await self.batch.update_batch(updates)

    async def delete_batch(self, ids: Sequence[str]) -> BatchResult:
        return await self.batch.delete_batch(ids)

    async def embed_text(self, text: str) -> List[float]:
        return await self.embedder.embed_text(text)

    async def create_with_lazy_embedding(self, record: MemoryRecord, table: str, unique: bool = True) -> str:
        memory_id = await self.embedder.create_with_lazy_embedding(record, table, unique)
        await self.retrieval.invalidate_related(table=table, room_id=record.room_id)
        return memory_id

    async def backfill_embeddings(self, records: Sequence[MemoryRecord]) -> List[MemoryRecord]:
        return await self.embedder.backfill_embeddings(records)

    async def get_context(self, room_id: str, query_text: str, **options: Any) -> ContextResult:
        return await self.context.get_context(room_id, query_text, **options)

    async def get_by_multiple_criteria(
        self,
        table_names: Sequence[str],
        filters: Mapping[str, Any] | None = None,
        counts: Mapping[str, int] | None = None,
        include_embeddings: bool = False,
    ) -> Dict[str, List[MemoryRecord]]:
        return await self.context.get_by_multiple_criteria(table_names, filters, counts, include_embeddings)


__all__ = ["MemorySystem", "embedding_model_from_settings", "setup_observability"]
