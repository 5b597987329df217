import asyncio
import re
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from memoryopt.distributed import DistributedCache, DistributedCacheConfig
from memoryopt.models import MemoryContent, MemoryMetadata, MemoryRecord
from memoryopt.store import StoreCapability


def _record(
    text: str,
    type: str = "facts",
    room_id: str = "room-1",
    embedding=None,
    id=None,
    source=None,
) -> MemoryRecord:
    return MemoryRecord(
        id=id,
        entity_id="user-1",
        room_id=room_id,
        content=MemoryContent(text=text),
        metadata=MemoryMetadata(type=type, source=source),
        embedding=embedding,
    )


class FakeStore:
    """Store double that records every call and fails on request."""

    def __init__(self) -> None:
        self.capabilities = frozenset(StoreCapability)
        self.tables: dict[str, list[MemoryRecord]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.search_results: list[MemoryRecord] = []
        self.fail_create: set[str] = set()
        self.fail_create_once: set[str] = set()
        self.fail_batch = False
        self.fail_get: set[str] = set()
        self.fail_search = False
        self.update_results: dict[str, Any] = {}
        self.delete_failures: dict[str, Exception] = {}
        self._next = 0

    def calls_of(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]

    def _store(self, record: MemoryRecord, table: str) -> str:
        self._next += 1
        memory_id = f"mem-{self._next}"
        self.tables.setdefault(table, []).append(record.model_copy(update={"id": memory_id}))
        return memory_id

    async def get_memories(self, params):
        self.calls.append(("get_memories", dict(params)))
        table = params.get("table_name")
        if table in self.fail_get:
            raise RuntimeError(f"get failed for {table}")
        rows = [
            r for r in self.tables.get(table, [])
            if params.get("room_id") is None or r.room_id == params["room_id"]
        ]
        count = params.get("count")
        return rows[-count:] if count else rows

    async def search_memories(self, params):
        self.calls.append(("search_memories", dict(params)))
        if self.fail_search:
            raise RuntimeError("search failed")
        return list(self.search_results)

    async def create_memory(self, record, table, unique=True):
        self.calls.append(("create_memory", record))
        await asyncio.sleep(0)
        if record.text in self.fail_create:
            raise RuntimeError(f"create failed for {record.text}")
        if record.text in self.fail_create_once:
            self.fail_create_once.discard(record.text)
            raise RuntimeError(f"transient failure for {record.text}")
        return self._store(record, table)

    async def create_memories_batch(self, records, table, unique=True):
        self.calls.append(("create_memories_batch", list(records)))
        if self.fail_batch:
            raise RuntimeError("batch insert failed")
        return [self._store(r, table) for r in records]

    async def update_memory(self, partial):
        self.calls.append(("update_memory", dict(partial)))
        outcome = self.update_results.get(partial.get("id"), True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def delete_memory(self, memory_id):
        self.calls.append(("delete_memory", memory_id))
        error = self.delete_failures.get(memory_id)
        if error is not None:
            raise error


class FakeEmbedder:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.fail_all = False
        self.vector: Any = None

    async def embed(self, text):
        self.calls.append(text)
        if self.fail_all or text in self.fail_on:
            raise RuntimeError("embedding model unavailable")
        if self.vector is not None:
            return self.vector
        return [float(len(text)), 1.0, 0.0, 0.5]


def _glob_to_regex(pattern: str) -> re.Pattern:
    out = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            out.append(re.escape(next(chars, "")))
        elif ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            body = []
            for inner in chars:
                if inner == "]":
                    break
                body.append(re.escape(inner))
            out.append("[" + "".join(body) + "]")
        else:
            out.append(re.escape(ch))
    return re.compile("".join(out) + r"\Z", re.S)


class FakePubSub:
    def __init__(self, server: "FakeRedis") -> None:
        self.server = server
        self.channels: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        self.server._check()
        self.channels.update(channels)
        self.server.pubsubs.append(self)

    async def unsubscribe(self, *channels):
        self.channels.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    """Minimal asyncio Redis double keyed like ``decode_responses=True``."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.pubsubs: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []
        self.ping_failures = 0
        self.pings = 0
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def ping(self):
        self.pings += 1
        if self.ping_failures > 0:
            self.ping_failures -= 1
            raise RedisConnectionError("connection refused")
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        self._check()
        regex = _glob_to_regex(match or "*")
        for key in list(self.data):
            if regex.match(key):
                yield key

    async def info(self):
        self._check()
        return {"redis_version": "7.2.0", "connected_clients": len(self.pubsubs) + 1}

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        receivers = [p for p in self.pubsubs if channel in p.channels and not p.closed]
        for pubsub in receivers:
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self):
        return FakePubSub(self)

    async def aclose(self):
        self.closed = True


async def _eventually(predicate, timeout: float = 1.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


@pytest.fixture
def make_record():
    return _record


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def distributed(fake_redis):
    config = DistributedCacheConfig(url="redis://fake:6379/0", connect_attempts=3, retry_backoff=0)
    return DistributedCache(config, client=fake_redis)


@pytest.fixture
def eventually():
    return _eventually
