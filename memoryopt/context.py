from __future__ import annotations

"""Parallel multi-source retrieval assembled into a prompt context."""

import asyncio
import time
from typing import Any, Awaitable, Dict, List, Mapping, Sequence

import structlog

from .embedding import LazyEmbedder
from .errors import ContextRetrievalError, EmbeddingError
from .models import ContextMetadata, ContextResult, MemoryRecord
from .retrieval import CachedMemories, CacheLookup
from .tracing import async_span

logger = structlog.get_logger(__name__)

MESSAGES_TABLE = "messages"
FACTS_TABLE = "facts"
ENTITIES_TABLE = "entities"
DEFAULT_CRITERIA_COUNT = 10


def format_context(
    messages: Sequence[MemoryRecord],
    facts: Sequence[MemoryRecord],
    entities: Sequence[MemoryRecord],
    query_text: str,
) -> str:
    """Render the retrieved memories as plain-text prompt sections."""
    sections: List[str] = []
    if messages:
        lines = [f"{m.metadata.source or 'user'}: {m.text}" for m in messages[-3:]]
        sections.append("Recent conversation:\n" + "\n".join(lines))
    if facts:
        sections.append("Relevant knowledge:\n" + "\n".join(f.text for f in facts))
    if entities:
        lines = [f"{e.metadata.type or 'entity'}: {e.text}" for e in entities]
        sections.append("Entity context:\n" + "\n".join(lines))
    sections.append(f"Current message: {query_text}")
    return "\n\n".join(sections)


class ContextualMemories:
    def __init__(self, retrieval: CachedMemories, embedder: LazyEmbedder) -> None:
        self.retrieval = retrieval
        self.embedder = embedder

    async def _safe(self, stage: str, lookup: Awaitable[CacheLookup]) -> CacheLookup | None:
        try:
            return await lookup
        except Exception as exc:  # noqa: BLE001
            logger.warning("context_retrieval_failed", stage=stage, error=str(exc))
            return None

    async def _query_embedding(self, query_text: str) -> List[float] | None:
        try:
            return await self.embedder.embed_text(query_text)
        except EmbeddingError as exc:
            logger.warning("query_embedding_failed", error=str(exc))
            return None

    async def get_context(
        self,
        room_id: str,
        query_text: str,
        *,
        message_count: int = 5,
        fact_count: int = 6,
        entity_count: int = 3,
        similarity_threshold: float = 0.7,
        include_embeddings: bool = False,
    ) -> ContextResult:
        """Gather recent messages, similar facts and entities for ``room_id``.

        Individual retrievals degrade to empty lists; only a failure of the
        aggregation itself raises :class:`ContextRetrievalError`.
        """
        started = time.perf_counter()
        stage = "embedding"
        async with async_span("memoryopt.get_context", room_id=room_id):
            try:
                query_embedding = await self._query_embedding(query_text) if fact_count > 0 else None

                stage = "retrieval"
                lookups: Dict[str, Awaitable[CacheLookup | None]] = {
                    "messages": self._safe(
                        "messages",
                        self.retrieval.fetch(
                            "memories", {"table_name": MESSAGES_TABLE, "room_id": room_id, "count": message_count}
                        ),
                    ),
                    "entities": self._safe(
                        "entities",
                        self.retrieval.fetch(
                            "memories", {"table_name": ENTITIES_TABLE, "room_id": room_id, "count": entity_count}
                        ),
                    ),
                }
                if query_embedding is not None:
                    lookups["facts"] = self._safe(
                        "facts",
                        self.retrieval.fetch(
                            "search",
                            {
                                "table_name": FACTS_TABLE,
                                "room_id": room_id,
                                "embedding": query_embedding,
                                "count": fact_count,
                                "match_threshold": similarity_threshold,
                            },
                        ),
                    )
                results = dict(zip(lookups, await asyncio.gather(*lookups.values())))

                def records(name: str) -> List[MemoryRecord]:
                    found = results.get(name)
                    return list(found.records) if found is not None else []

                messages, facts, entities = records("messages"), records("facts"), records("entities")
                cache_hit = all(r is not None and r.hit for r in results.values())

                if include_embeddings:
                    stage = "embedding_backfill"
                    messages, facts, entities = await asyncio.gather(
                        self.embedder.backfill_embeddings(messages),
                        self.embedder.backfill_embeddings(facts),
                        self.embedder.backfill_embeddings(entities),
                    )

                stage = "format"
                context = format_context(messages, facts, entities, query_text)
            except Exception as exc:  # noqa: BLE001
                logger.error("context_aggregation_failed", stage=stage, room_id=room_id, error=str(exc))
                raise ContextRetrievalError(stage, str(exc)) from exc

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        metadata = ContextMetadata(
            total_memories=len(messages) + len(facts) + len(entities),
            cache_hit=cache_hit,
            query_time_ms=elapsed_ms,
            distributed_used=self.retrieval.distributed_connected,
        )
        logger.debug(
            "context_retrieved",
            room_id=room_id,
            total=metadata.total_memories,
            cache_hit=cache_hit,
            query_time_ms=round(elapsed_ms, 2),
        )
        return ContextResult(messages=messages, facts=facts, entities=entities, context=context, metadata=metadata)

    async def get_by_multiple_criteria(
        self,
        table_names: Sequence[str],
        filters: Mapping[str, Any] | None = None,
        counts: Mapping[str, int] | None = None,
        include_embeddings: bool = False,
    ) -> Dict[str, List[MemoryRecord]]:
        """Fetch several tables at once; a failing table maps to ``[]``."""
        filters = dict(filters or {})
        counts = counts or {}

        async def _one(table: str) -> List[MemoryRecord]:
            params = {**filters, "table_name": table, "count": counts.get(table, DEFAULT_CRITERIA_COUNT)}
            try:
                found = await self.retrieval.get_cached_memories(params)
            except Exception as exc:  # noqa: BLE001
                logger.warning("criteria_retrieval_failed", table=table, error=str(exc))
                return []
            if include_embeddings:
                found = await self.embedder.backfill_embeddings(found)
            return found

        tables = list(table_names)
        fetched = await asyncio.gather(*(_one(t) for t in tables))
        return dict(zip(tables, fetched))


__all__ = ["ContextualMemories", "format_context"]
