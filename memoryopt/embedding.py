from __future__ import annotations

"""Embedding model adapters and the deferred embedding policy."""

import asyncio
import hashlib
from typing import Any, List, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import EmbeddingError, InvalidEmbeddingError
from .models import MemoryRecord

logger = structlog.get_logger(__name__)

MESSAGE_MIN_LENGTH = 20
CUSTOM_MIN_LENGTH = 50
COMMAND_PREFIXES = ("@", "/")


@runtime_checkable
class EmbeddingModel(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


def _hash_embed(text: str, dims: int) -> np.ndarray:
    """Return a deterministic unit vector for ``text``."""
    digest = hashlib.sha256(text.encode()).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    vec = rng.standard_normal(dims).astype("float32")
    return vec / np.linalg.norm(vec)


class HashEmbeddingModel:
    """Offline embedder; identical text always maps to the same vector."""

    def __init__(self, dims: int = 64) -> None:
        self.dims = dims
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        return _hash_embed(text, self.dims).tolist()


class HTTPEmbeddingModel:
    """Call an OpenAI compatible ``/embeddings`` endpoint with retries."""

    def __init__(
        self,
        url: str,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        attempts: int = 3,
        backoff: float = 0.5,
        dims: int | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.attempts = attempts
        self.backoff = backoff
        self.dims = dims
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff),
            retry=retry_if_exception_type(httpx.HTTPError),
        ):
            with attempt:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
        return resp

    async def embed(self, text: str) -> List[float]:
        payload: dict[str, Any] = {"model": self.model, "input": text}
        if self.dims:
            payload["dimensions"] = self.dims
        try:
            if self._client is not None:
                resp = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await self._post(client, payload)
        except RetryError as exc:
            error = exc.last_attempt.exception()
            logger.warning("embedding_request_failed", url=self.url, error=str(error))
            raise EmbeddingError(str(error)) from error
        try:
            return resp.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise InvalidEmbeddingError(f"unexpected embedding payload: {exc!r}") from exc


def validate_embedding(vector: Any, dims: int | None = None) -> List[float]:
    """Return ``vector`` as a list of floats or raise :class:`InvalidEmbeddingError`."""
    try:
        arr = np.asarray(vector, dtype="float64")
    except (TypeError, ValueError) as exc:
        raise InvalidEmbeddingError(f"embedding is not numeric: {exc}") from exc
    if arr.ndim != 1 or arr.size == 0:
        raise InvalidEmbeddingError(f"embedding must be a non-empty vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbeddingError("embedding contains non-finite values")
    if dims is not None and arr.size != dims:
        raise InvalidEmbeddingError(f"expected {dims} dimensions, got {arr.size}")
    return arr.tolist()


def should_embed_now(record: MemoryRecord) -> bool:
    """Decide whether ``record`` is worth embedding before it is persisted.

    Knowledge (``facts``/``document``) is always embedded. Messages are
    embedded when longer than 20 characters and not a mention or command;
    custom records only above 50 characters. Everything else waits for a
    backfill.
    """
    kind = record.metadata.type
    text = record.text
    if kind in ("facts", "document"):
        return True
    if kind == "message":
        return len(text) > MESSAGE_MIN_LENGTH and not text.startswith(COMMAND_PREFIXES)
    if kind == "custom":
        return len(text) > CUSTOM_MIN_LENGTH
    return False


class LazyEmbedder:
    def __init__(
        self,
        store: Any,
        model: EmbeddingModel,
        metrics: Any | None = None,
        dims: int | None = None,
        retrieval: Any | None = None,
    ) -> None:
        self.store = store
        self.model = model
        self.metrics = metrics
        self.dims = dims
        self.retrieval = retrieval

    async def embed_text(self, text: str) -> List[float]:
        try:
            raw = await self.model.embed(text)
        except EmbeddingError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingError(str(exc)) from exc
        return validate_embedding(raw, self.dims)

    async def create_with_lazy_embedding(self, record: MemoryRecord, table: str, unique: bool = True) -> str:
        """Persist ``record``, embedding it first when the policy asks for it.

        A failed embedding is logged and the record is stored without one.
        """
        if not record.has_embedding() and should_embed_now(record):
            try:
                record = record.model_copy(update={"embedding": await self.embed_text(record.text)})
            except EmbeddingError as exc:
                logger.warning("embedding_failed", table=table, type=record.metadata.type, error=str(exc))
        if self.metrics is not None:
            with self.metrics.track("create"):
                return await self.store.create_memory(record, table, unique)
        return await self.store.create_memory(record, table, unique)

    async def _backfill_one(self, record: MemoryRecord) -> tuple[MemoryRecord, bool]:
        vector = await self.embed_text(record.text)
        stored = False
        if record.id:
            try:
                stored = await self.store.update_memory({"id": record.id, "embedding": vector}) is not False
            except Exception as exc:  # noqa: BLE001
                logger.warning("backfill_update_failed", id=record.id, error=str(exc))
        return record.model_copy(update={"embedding": vector}), stored

    async def _invalidate_rooms(self, records: List[MemoryRecord]) -> None:
        if self.retrieval is None or not records:
            return
        rooms = {r.room_id for r in records}
        if None in rooms:
            await self.retrieval.invalidate_all()
            return
        for room_id in rooms:
            await self.retrieval.invalidate_related(room_id=room_id)

    async def backfill_embeddings(self, records: Sequence[MemoryRecord]) -> List[MemoryRecord]:
        """Embed every record missing a vector and write it back to the store.

        The returned list keeps the input order; records whose embedding
        failed are returned unchanged. A failed store update is logged and the
        embedded copy is still returned. Cached queries for the rooms of the
        updated records are invalidated.
        """
        result = list(records)
        pending = [(idx, r) for idx, r in enumerate(result) if not r.has_embedding()]
        if not pending:
            return result
        outcomes = await asyncio.gather(
            *(self._backfill_one(r) for _, r in pending), return_exceptions=True
        )
        updated: List[MemoryRecord] = []
        for (idx, record), outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("backfill_failed", id=record.id, error=str(outcome))
                continue
            result[idx], stored = outcome
            if stored:
                updated.append(record)
        await self._invalidate_rooms(updated)
        logger.debug("backfill_complete", requested=len(pending), stored=len(updated))
        return result


__all__ = [
    "EmbeddingModel",
    "HashEmbeddingModel",
    "HTTPEmbeddingModel",
    "LazyEmbedder",
    "should_embed_now",
    "validate_embedding",
]
