import pytest
from structlog.testing import capture_logs

from memoryopt.cache import LocalCache
from memoryopt.context import ContextualMemories, format_context
from memoryopt.embedding import LazyEmbedder
from memoryopt.errors import ContextRetrievalError
from memoryopt.retrieval import CachedMemories
from memoryopt.store import InMemoryMemoryStore


def _context(store, embedder, distributed=None):
    retrieval = CachedMemories(store, LocalCache(), distributed)
    return ContextualMemories(retrieval, LazyEmbedder(store, embedder, retrieval=retrieval))


def _seed(store, make_record):
    store.tables["messages"] = [
        make_record(f"message {i}", type="message", id=f"msg-{i}", source="discord") for i in range(4)
    ]
    store.tables["entities"] = [make_record("Alice likes tea", type="entity", id="ent-1")]
    store.search_results = [make_record("Tea is a drink", id="fact-1")]


@pytest.mark.asyncio
async def test_get_context_collects_all_sources(store, embedder, make_record):
    _seed(store, make_record)
    ctx = _context(store, embedder)
    result = await ctx.get_context("room-1", "what does alice drink?")
    assert [m.id for m in result.messages] == ["msg-0", "msg-1", "msg-2", "msg-3"]
    assert [f.id for f in result.facts] == ["fact-1"]
    assert [e.id for e in result.entities] == ["ent-1"]
    assert result.metadata.total_memories == 6
    assert result.metadata.cache_hit is False
    assert result.metadata.distributed_used is False
    assert result.metadata.query_time_ms >= 0
    assert embedder.calls == ["what does alice drink?"]

    search = store.calls_of("search_memories")[0]
    assert search["table_name"] == "facts"
    assert search["count"] == 6
    assert search["match_threshold"] == 0.7
    counts = {c["table_name"]: c["count"] for c in store.calls_of("get_memories")}
    assert counts == {"messages": 5, "entities": 3}


@pytest.mark.asyncio
async def test_second_call_is_a_cache_hit(store, embedder, make_record):
    _seed(store, make_record)
    ctx = _context(store, embedder)
    await ctx.get_context("room-1", "hello there")
    again = await ctx.get_context("room-1", "hello there")
    assert again.metadata.cache_hit is True
    assert len(store.calls_of("get_memories")) == 2
    assert len(store.calls_of("search_memories")) == 1


@pytest.mark.asyncio
async def test_context_text_format(store, embedder, make_record):
    _seed(store, make_record)
    result = await _context(store, embedder).get_context("room-1", "hi")
    assert result.context == (
        "Recent conversation:\n"
        "discord: message 1\n"
        "discord: message 2\n"
        "discord: message 3\n"
        "\n"
        "Relevant knowledge:\n"
        "Tea is a drink\n"
        "\n"
        "Entity context:\n"
        "entity: Alice likes tea\n"
        "\n"
        "Current message: hi"
    )


def test_format_context_defaults(make_record):
    messages = [make_record("hey", type="message")]
    assert format_context(messages, [], [], "q") == "Recent conversation:\nuser: hey\n\nCurrent message: q"
    assert format_context([], [], [], "q") == "Current message: q"


@pytest.mark.asyncio
async def test_failing_fact_search_degrades(store, embedder, make_record):
    _seed(store, make_record)
    store.fail_search = True
    with capture_logs() as logs:
        result = await _context(store, embedder).get_context("room-1", "tea?")
    assert result.facts == []
    assert result.metadata.total_memories == len(result.messages) + len(result.entities) == 5
    assert result.metadata.cache_hit is False
    assert any(e["event"] == "context_retrieval_failed" and e["stage"] == "facts" for e in logs)


@pytest.mark.asyncio
async def test_embedding_failure_skips_fact_search(store, embedder, make_record):
    _seed(store, make_record)
    embedder.fail_all = True
    result = await _context(store, embedder).get_context("room-1", "tea?")
    assert result.facts == []
    assert store.calls_of("search_memories") == []
    assert len(result.messages) == 4


@pytest.mark.asyncio
async def test_zero_fact_count_does_not_embed(store, embedder, make_record):
    _seed(store, make_record)
    result = await _context(store, embedder).get_context("room-1", "tea?", fact_count=0, message_count=2)
    assert embedder.calls == []
    assert result.facts == []
    assert [m.id for m in result.messages] == ["msg-2", "msg-3"]


@pytest.mark.asyncio
async def test_include_embeddings_backfills(store, embedder, make_record):
    _seed(store, make_record)
    result = await _context(store, embedder).get_context("room-1", "q", include_embeddings=True)
    assert all(r.embedding for r in result.messages + result.facts + result.entities)
    assert len(store.calls_of("update_memory")) == 6


@pytest.mark.asyncio
async def test_backfilled_embeddings_are_not_served_stale(embedder, make_record):
    store = InMemoryMemoryStore()
    for i in range(3):
        await store.create_memory(make_record(f"message {i}", type="message"), "messages")
    ctx = _context(store, embedder)
    first = await ctx.get_context("room-1", "q", fact_count=0, include_embeddings=True)
    assert len(embedder.calls) == 3
    assert all(m.embedding for m in first.messages)
    second = await ctx.get_context("room-1", "q", fact_count=0, include_embeddings=True)
    assert len(embedder.calls) == 3
    assert all(m.embedding for m in second.messages)


@pytest.mark.asyncio
async def test_aggregation_failure_raises_context_error(store, embedder, make_record, monkeypatch):
    _seed(store, make_record)

    def broken(*args, **kwargs):
        raise ValueError("template exploded")

    monkeypatch.setattr("memoryopt.context.format_context", broken)
    with pytest.raises(ContextRetrievalError) as info:
        await _context(store, embedder).get_context("room-1", "q")
    assert info.value.stage == "format"
    assert "template exploded" in str(info.value)


@pytest.mark.asyncio
async def test_distributed_flag_reflects_connection(store, embedder, make_record, distributed):
    _seed(store, make_record)
    await distributed.connect()
    result = await _context(store, embedder, distributed).get_context("room-1", "q")
    assert result.metadata.distributed_used is True


@pytest.mark.asyncio
async def test_get_by_multiple_criteria(store, embedder, make_record):
    _seed(store, make_record)
    store.fail_get = {"broken"}
    ctx = _context(store, embedder)
    result = await ctx.get_by_multiple_criteria(
        ["messages", "entities", "broken", "empty"],
        filters={"room_id": "room-1"},
        counts={"messages": 2},
    )
    assert set(result) == {"messages", "entities", "broken", "empty"}
    assert [m.id for m in result["messages"]] == ["msg-2", "msg-3"]
    assert [e.id for e in result["entities"]] == ["ent-1"]
    assert result["broken"] == []
    assert result["empty"] == []
    counts = {c["table_name"]: c["count"] for c in store.calls_of("get_memories")}
    assert counts["entities"] == 10


@pytest.mark.asyncio
async def test_get_by_multiple_criteria_with_embeddings(store, embedder, make_record):
    _seed(store, make_record)
    result = await _context(store, embedder).get_by_multiple_criteria(["entities"], include_embeddings=True)
    assert result["entities"][0].embedding is not None
