from __future__ import annotations

"""Best-effort Redis tier shared across processes.

Every network or protocol failure is converted into a :class:`CacheResult`
carrying a :class:`~memoryopt.errors.CacheError` and logged as a warning. The
public helpers then degrade to ``None``/``False``/``0`` so callers fall back to
the local cache or the store without ever seeing the error.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CacheError
from .models import MemoryRecord, RecordList

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Handler = Callable[[Any], "Awaitable[None] | None"]

# ValueError covers JSON decoding and pydantic validation of cached payloads
_FAILURES = (RedisError, OSError, asyncio.TimeoutError, ValueError)
_GLOB_SPECIAL = "\\*?[]"


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: T | None = None
    error: CacheError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None) -> "CacheResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: CacheError) -> "CacheResult[T]":
        return cls(error=error)


@dataclass
class DistributedCacheConfig:
    url: str
    password: str | None = None
    db: int = 0
    key_prefix: str = "memoryopt:"
    ttl_short: int = 300
    ttl_medium: int = 3600
    ttl_long: int = 86400
    connect_attempts: int = 5
    retry_backoff: float = 0.2

    @classmethod
    def from_settings(cls, settings: Any) -> "DistributedCacheConfig":
        return cls(
            url=settings.redis_url,
            password=settings.redis_password,
            db=settings.redis_db,
            key_prefix=settings.redis_key_prefix,
            ttl_short=settings.redis_ttl_short,
            ttl_medium=settings.redis_ttl_medium,
            ttl_long=settings.redis_ttl_long,
            connect_attempts=settings.redis_connect_attempts,
        )


def escape_glob(text: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in text)


class DistributedCache:
    """Redis-backed cache tier with publish/subscribe."""

    def __init__(self, config: DistributedCacheConfig, client: Any | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._connected = False
        self._pubsub: Any | None = None
        self._listener: asyncio.Task | None = None
        self._handlers: Dict[str, List[Handler]] = {}

    # ---------- lifecycle ----------
    @property
    def connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> bool:
        """Connect and ping, retrying with exponential backoff. Idempotent."""
        if self.connected:
            return True
        try:
            if self._client is None:
                self._client = aioredis.from_url(
                    self.config.url,
                    password=self.config.password,
                    db=self.config.db,
                    decode_responses=True,
                    socket_connect_timeout=10,
                )
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.connect_attempts),
                wait=wait_exponential(multiplier=self.config.retry_backoff, max=5),
                retry=retry_if_exception_type(_FAILURES),
                reraise=True,
            ):
                with attempt:
                    await self._client.ping()
        except _FAILURES as exc:
            logger.warning("distributed_cache_connect_failed", url=self.config.url, error=str(exc))
            self._connected = False
            return False
        self._connected = True
        logger.info("distributed_cache_connected", url=self.config.url)
        return True

    async def disconnect(self) -> None:
        """Drop subscriptions and close the connection. Idempotent."""
        await self._stop_listener()
        self._handlers.clear()
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except _FAILURES as exc:
                logger.warning("distributed_pubsub_close_failed", error=str(exc))
            self._pubsub = None
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except _FAILURES as exc:
                logger.warning("distributed_cache_close_failed", error=str(exc))
            self._client = None
        if self._connected:
            logger.info("distributed_cache_disconnected")
        self._connected = False

    async def health_check(self) -> bool:
        if not self.connected:
            return False
        result = await self._run("ping", lambda c: c.ping())
        return result.ok and bool(result.value)

    # ---------- helpers ----------
    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    def ttl_for(self, ttl: str | int) -> int:
        if isinstance(ttl, int):
            return ttl
        try:
            return {
                "short": self.config.ttl_short,
                "medium": self.config.ttl_medium,
                "long": self.config.ttl_long,
            }[ttl]
        except KeyError:
            raise ValueError(f"unknown TTL class: {ttl!r}") from None

    async def _run(self, operation: str, call: Callable[[Any], Awaitable[T]]) -> CacheResult[T]:
        if not self.connected:
            return CacheResult.failure(CacheError(operation, "not connected"))
        try:
            return CacheResult.success(await call(self._client))
        except _FAILURES as exc:
            logger.warning("distributed_cache_error", operation=operation, error=str(exc))
            return CacheResult.failure(CacheError(operation, str(exc)))

    # ---------- key/value ----------
    async def fetch(self, key: str) -> CacheResult[str]:
        return await self._run("get", lambda c: c.get(self._key(key)))

    async def store(self, key: str, value: str, ttl: str | int = "short") -> CacheResult[bool]:
        seconds = self.ttl_for(ttl)
        return await self._run("set", lambda c: c.set(self._key(key), value, ex=seconds))

    async def get(self, key: str) -> str | None:
        return (await self.fetch(key)).value

    async def set(self, key: str, value: str, ttl: str | int = "short") -> bool:
        return (await self.store(key, value, ttl)).ok

    async def fetch_records(self, key: str) -> CacheResult[List[MemoryRecord]]:
        raw = await self.fetch(key)
        if not raw.ok or raw.value is None:
            return CacheResult(value=None, error=raw.error)
        try:
            return CacheResult.success(RecordList.validate_json(raw.value))
        except ValueError as exc:
            logger.warning("distributed_cache_decode_failed", key=key, error=str(exc))
            return CacheResult.failure(CacheError("decode", str(exc)))

    async def get_records(self, key: str) -> List[MemoryRecord] | None:
        return (await self.fetch_records(key)).value

    async def set_records(self, key: str, records: Iterable[MemoryRecord], ttl: str | int = "short") -> bool:
        payload = RecordList.dump_json(list(records)).decode()
        return await self.set(key, payload, ttl)

    async def delete(self, key: str) -> bool:
        return (await self._run("delete", lambda c: c.delete(self._key(key)))).ok

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key under the prefix matching glob ``pattern``."""

        async def _delete(client: Any) -> int:
            match = escape_glob(self.config.key_prefix) + pattern
            keys = [k async for k in client.scan_iter(match=match)]
            if not keys:
                return 0
            return int(await client.delete(*keys))

        result = await self._run("delete_pattern", _delete)
        if result.ok and result.value:
            logger.info("distributed_cache_invalidated", pattern=pattern, deleted=result.value)
        return result.value or 0

    async def clear(self) -> int:
        return await self.delete_pattern("*")

    async def info(self) -> dict[str, Any]:
        result = await self._run("info", lambda c: c.info())
        return dict(result.value or {})

    # ---------- publish/subscribe ----------
    async def publish(self, channel: str, event: Any) -> int:
        """Publish ``event`` as JSON; returns the number of receiving subscribers."""
        payload = json.dumps(event, default=str)
        result = await self._run("publish", lambda c: c.publish(channel, payload))
        logger.debug("distributed_published", channel=channel, subscribers=result.value or 0)
        return int(result.value or 0)

    async def subscribe(self, channel: str, handler: Handler) -> bool:
        if not self.connected:
            logger.warning("distributed_subscribe_unavailable", channel=channel)
            return False
        handlers = self._handlers.setdefault(channel, [])
        if handler not in handlers:
            handlers.append(handler)
        if len(handlers) > 1:
            return True
        try:
            if self._pubsub is None:
                self._pubsub = self._client.pubsub()
            await self._pubsub.subscribe(channel)
        except _FAILURES as exc:
            logger.warning("distributed_subscribe_failed", channel=channel, error=str(exc))
            self._handlers.pop(channel, None)
            return False
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())
        logger.info("distributed_subscribed", channel=channel)
        return True

    async def unsubscribe(self, channel: str, handler: Handler | None = None) -> None:
        handlers = self._handlers.get(channel)
        if handlers is None:
            return
        if handler is not None:
            if handler in handlers:
                handlers.remove(handler)
            if handlers:
                return
        self._handlers.pop(channel, None)
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(channel)
            except _FAILURES as exc:
                logger.warning("distributed_unsubscribe_failed", channel=channel, error=str(exc))
        if not self._handlers:
            await self._stop_listener()
        logger.info("distributed_unsubscribed", channel=channel)

    def channels(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, channel: str, raw: Any) -> int:
        """Deliver a raw pub/sub payload to the local handlers of ``channel``."""
        try:
            event = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as exc:
            logger.error("distributed_message_decode_failed", channel=channel, error=str(exc))
            return 0

        async def _call(handler: Handler) -> bool:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.error("distributed_handler_failed", channel=channel, error=str(exc))
                return False
            return True

        outcomes = await asyncio.gather(*(_call(h) for h in list(self._handlers.get(channel, ()))))
        return sum(outcomes)

    async def _listen(self) -> None:
        while self._handlers and self._pubsub is not None:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except _FAILURES as exc:
                logger.warning("distributed_pubsub_error", error=str(exc))
                await asyncio.sleep(max(self.config.retry_backoff, 0.05))
                continue
            if not message or message.get("type") != "message":
                continue
            await self.dispatch(message["channel"], message["data"])

    async def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None or listener.done():
            return
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass


__all__ = [
    "CacheResult",
    "DistributedCache",
    "DistributedCacheConfig",
    "escape_glob",
]
