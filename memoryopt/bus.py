from __future__ import annotations

"""Cross-process event bus layered on the distributed cache pub/sub."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List

import structlog

from .distributed import DistributedCache
from .errors import MemoryOptError
from .models import BusEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[BusEvent], "Awaitable[None] | None"]


class MessageBus:
    """Publish typed events to every other service sharing the Redis tier.

    Each event type maps to the channel ``<channel_prefix><event_type>``.
    Events published by this bus are dropped when they loop back to it.
    """

    def __init__(
        self,
        distributed: DistributedCache,
        service_id: str,
        channel_prefix: str = "memoryopt:bus:",
    ) -> None:
        self.distributed = distributed
        self.service_id = service_id
        self.channel_prefix = channel_prefix
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._initialized = False
        self.published = 0
        self.received = 0
        self.skipped = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def channel(self, event_type: str) -> str:
        return f"{self.channel_prefix}{event_type}"

    async def initialize(self) -> bool:
        if self._initialized:
            return True
        if not await self.distributed.connect():
            logger.warning("message_bus_unavailable", service_id=self.service_id)
            return False
        self._initialized = True
        logger.info("message_bus_initialized", service_id=self.service_id)
        return True

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise MemoryOptError("message bus is not initialized")

    async def publish(self, event_type: str, data: Any, metadata: dict[str, Any] | None = None) -> int:
        self._require_initialized()
        event = BusEvent(type=event_type, data=data, source=self.service_id, metadata=metadata)
        receivers = await self.distributed.publish(self.channel(event_type), event.to_dict())
        self.published += 1
        logger.debug("message_bus_published", event_type=event_type, receivers=receivers)
        return receivers

    async def subscribe(self, event_type: str, handler: EventHandler) -> bool:
        self._require_initialized()
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
        if len(handlers) > 1:
            return True
        if not await self.distributed.subscribe(self.channel(event_type), self._receive):
            self._handlers.pop(event_type, None)
            return False
        return True

    async def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        if handler is not None:
            if handler in handlers:
                handlers.remove(handler)
            if handlers:
                return
        self._handlers.pop(event_type, None)
        await self.distributed.unsubscribe(self.channel(event_type), self._receive)

    async def _receive(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("message_bus_malformed_event", payload_type=type(payload).__name__)
            return
        event = BusEvent.from_dict(payload)
        if event.source == self.service_id:
            self.skipped += 1
            return
        self.received += 1

        async def _call(handler: EventHandler) -> None:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "message_bus_handler_failed",
                    event_type=event.type,
                    source=event.source,
                    error=str(exc),
                )

        await asyncio.gather(*(_call(h) for h in list(self._handlers.get(event.type, ()))))

    def active_event_types(self) -> list[str]:
        return list(self._handlers)

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))

    def stats(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "initialized": self._initialized,
            "connected": self.distributed.connected,
            "event_types": self.active_event_types(),
            "handlers": sum(len(h) for h in self._handlers.values()),
            "published": self.published,
            "received": self.received,
            "skipped": self.skipped,
        }

    async def shutdown(self) -> None:
        for event_type in list(self._handlers):
            await self.unsubscribe(event_type)
        self._initialized = False
        logger.info("message_bus_shutdown", service_id=self.service_id)


__all__ = ["MessageBus", "EventHandler"]
