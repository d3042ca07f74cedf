"""Tests for short-term buffers, long-term stores, ranking, and context assembly."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from switchboard.config import MemoryConfig
from switchboard.errors import AIError
from switchboard.memory import (
    EmbeddingProvider,
    InMemoryStore,
    JsonFileMemoryStore,
    MemoryManager,
    cosine_similarity,
    keyword_relevance,
    recency_score,
)
from switchboard.models import MemoryEntry, MemoryQuery, Message
from switchboard.types import ErrorCode, MemoryType

AGENT = "agent-1"
SESSION = "session-1"


class Clock:
    """Settable UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class TableEmbedder(EmbeddingProvider):
    """Embeds known phrases to fixed vectors; everything else to [0, 1]."""

    def __init__(self, table: dict[str, list[float]]) -> None:
        self.table = table

    async def embed(self, text: str) -> list[float]:
        return self.table.get(text, [0.0, 1.0])


def manager(clock: Clock | None = None, **config) -> MemoryManager:
    return MemoryManager(MemoryConfig(**config), clock=clock or Clock())


def msg(role: str, content: str, **kwargs) -> Message:
    return Message(role=role, content=content, **kwargs)


# ---------------------------------------------------------------------------
# Short-term memory
# ---------------------------------------------------------------------------


class TestShortTerm:
    """Per-session ring buffers."""

    def test_capacity_evicts_oldest(self) -> None:
        mem = manager(short_term_capacity=3)
        for i in range(5):
            mem.add_to_short_term(AGENT, SESSION, msg("user", f"m{i}"))
        assert [e.content for e in mem.get_short_term(AGENT, SESSION)] == ["m2", "m3", "m4"]

    def test_sessions_are_isolated(self) -> None:
        mem = manager()
        mem.add_to_short_term(AGENT, "a", msg("user", "in a"))
        mem.add_to_short_term(AGENT, "b", msg("user", "in b"))
        mem.add_to_short_term("other", "a", msg("user", "other agent"))
        assert [e.content for e in mem.get_short_term(AGENT, "a")] == ["in a"]
        assert mem.get_short_term(AGENT, "missing") == []

    def test_messages_keep_roles_and_tool_ids(self) -> None:
        mem = manager()
        mem.add_to_short_term(AGENT, SESSION, msg("user", "weather?"))
        mem.add_to_short_term(
            AGENT, SESSION, msg("tool", '{"temp": 20}', name="weather", tool_call_id="call-1")
        )
        messages = mem.short_term_messages(AGENT, SESSION)
        assert [m.role for m in messages] == ["user", "tool"]
        assert messages[1].tool_call_id == "call-1"
        assert messages[1].name == "weather"

    def test_entries_are_short_term(self) -> None:
        entry = manager().add_to_short_term(AGENT, SESSION, msg("assistant", "hi"))
        assert entry.type == MemoryType.SHORT_TERM
        assert entry.session_id == SESSION
        assert entry.metadata == {"role": "assistant"}

    def test_clear_session(self) -> None:
        mem = manager()
        mem.add_to_short_term(AGENT, SESSION, msg("user", "x"))
        mem.clear_session(AGENT, SESSION)
        assert mem.get_short_term(AGENT, SESSION) == []
        assert mem.session_count() == 0

    def test_reads_do_not_create_sessions(self) -> None:
        mem = manager()
        assert mem.get_short_term(AGENT, "never-written") == []
        assert mem.short_term_messages("ghost", SESSION) == []
        assert mem.session_count() == 0
        mem.add_to_short_term(AGENT, SESSION, msg("user", "x"))
        assert mem.session_count() == 1


# ---------------------------------------------------------------------------
# Long-term memory
# ---------------------------------------------------------------------------


class TestLongTerm:
    """store_long_term, retrieve, and forget."""

    @pytest.mark.asyncio
    async def test_short_term_type_rejected(self) -> None:
        with pytest.raises(AIError) as exc_info:
            await manager().store_long_term(AGENT, "x", MemoryType.SHORT_TERM)
        assert exc_info.value.code == ErrorCode.MEMORY_ERROR

    @pytest.mark.asyncio
    async def test_importance_out_of_range_rejected(self) -> None:
        with pytest.raises(AIError) as exc_info:
            await manager().store_long_term(AGENT, "x", importance=1.5)
        assert exc_info.value.code == ErrorCode.MEMORY_ERROR

    @pytest.mark.asyncio
    async def test_importance_ranks_first(self) -> None:
        mem = manager()
        await mem.store_long_term(AGENT, "minor detail", importance=0.1)
        await mem.store_long_term(AGENT, "core fact", importance=0.9)
        ranked = await mem.retrieve(MemoryQuery(agent_id=AGENT))
        assert [e.content for e in ranked] == ["core fact", "minor detail"]

    @pytest.mark.asyncio
    async def test_keyword_relevance_breaks_ties(self) -> None:
        mem = manager()
        await mem.store_long_term(AGENT, "Likes jazz music")
        await mem.store_long_term(AGENT, "Prefers metric units")
        ranked = await mem.retrieve(MemoryQuery(agent_id=AGENT, query="convert to metric units"))
        assert ranked[0].content == "Prefers metric units"

    @pytest.mark.asyncio
    async def test_recency_favors_newer(self) -> None:
        clock = Clock()
        mem = manager(clock)
        await mem.store_long_term(AGENT, "old news")
        clock.advance(hours=48)
        await mem.store_long_term(AGENT, "fresh news")
        ranked = await mem.retrieve(MemoryQuery(agent_id=AGENT))
        assert ranked[0].content == "fresh news"

    @pytest.mark.asyncio
    async def test_filters(self) -> None:
        clock = Clock()
        mem = manager(clock)
        await mem.store_long_term(AGENT, "pref", MemoryType.PREFERENCE, tags=["ui"])
        await mem.store_long_term(AGENT, "fact", MemoryType.SEMANTIC, importance=0.2)
        await mem.store_long_term("someone-else", "theirs", MemoryType.PREFERENCE)

        by_type = await mem.retrieve(MemoryQuery(agent_id=AGENT, types=[MemoryType.PREFERENCE]))
        assert [e.content for e in by_type] == ["pref"]
        by_tag = await mem.retrieve(MemoryQuery(agent_id=AGENT, tags=["ui", "x"]))
        assert [e.content for e in by_tag] == ["pref"]
        important = await mem.retrieve(MemoryQuery(agent_id=AGENT, min_importance=0.3))
        assert [e.content for e in important] == ["pref"]
        later = await mem.retrieve(
            MemoryQuery(agent_id=AGENT, start=clock.now + timedelta(seconds=1))
        )
        assert later == []
        limited = await mem.retrieve(MemoryQuery(agent_id=AGENT, limit=1))
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry(self) -> None:
        clock = Clock()
        mem = manager(clock)
        await mem.store_long_term(AGENT, "short lived", ttl_seconds=60)
        await mem.store_long_term(AGENT, "durable")
        clock.advance(seconds=120)
        ranked = await mem.retrieve(MemoryQuery(agent_id=AGENT))
        assert [e.content for e in ranked] == ["durable"]

    @pytest.mark.asyncio
    async def test_retrieve_refreshes_accessed_at(self) -> None:
        clock = Clock()
        mem = manager(clock)
        entry = await mem.store_long_term(AGENT, "fact")
        clock.advance(hours=1)
        await mem.retrieve(MemoryQuery(agent_id=AGENT))
        stored = await mem.store.get(entry.id)
        assert stored.accessed_at == clock.now

    @pytest.mark.asyncio
    async def test_forget(self) -> None:
        mem = manager()
        entry = await mem.store_long_term(AGENT, "fact")
        assert await mem.forget(entry.id)
        assert not await mem.forget(entry.id)
        assert await mem.retrieve(MemoryQuery(agent_id=AGENT)) == []

    @pytest.mark.asyncio
    async def test_vector_search_uses_embeddings(self) -> None:
        embedder = TableEmbedder({"feline friend": [1.0, 0.0], "cat": [1.0, 0.0]})
        mem = MemoryManager(MemoryConfig(vector_search=True), embedder=embedder, clock=Clock())
        await mem.store_long_term(AGENT, "dog food")
        await mem.store_long_term(AGENT, "feline friend")
        ranked = await mem.retrieve(MemoryQuery(agent_id=AGENT, query="cat"))
        assert ranked[0].content == "feline friend"
        assert ranked[0].embedding == [1.0, 0.0]


# ---------------------------------------------------------------------------
# Context assembly
# ---------------------------------------------------------------------------


class TestBuildContext:
    """build_context ordering and budget trimming."""

    @pytest.mark.asyncio
    async def test_order_facts_turns_current(self) -> None:
        mem = manager()
        await mem.store_long_term(AGENT, "Prefers metric units", MemoryType.PREFERENCE)
        await mem.store_long_term(AGENT, "Talked about Paris", MemoryType.EPISODIC)
        mem.add_to_short_term(AGENT, SESSION, msg("user", "hello"))
        mem.add_to_short_term(AGENT, SESSION, msg("assistant", "hi!"))

        messages = await mem.build_context(AGENT, SESSION, "How far is 5 miles?", 4000)
        assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[0].content == "Relevant memories:\n- Prefers metric units"
        assert messages[-1].content == "How far is 5 miles?"

    @pytest.mark.asyncio
    async def test_oldest_turns_dropped_first(self) -> None:
        mem = manager()
        for content in ("a" * 40, "b" * 40, "c" * 40):
            mem.add_to_short_term(AGENT, SESSION, msg("user", content))
        messages = await mem.build_context(AGENT, SESSION, "hi?", 35)
        assert [m.content for m in messages] == ["b" * 40, "c" * 40, "hi?"]

    @pytest.mark.asyncio
    async def test_lowest_ranked_fact_dropped_after_turns(self) -> None:
        mem = manager()
        await mem.store_long_term(AGENT, "alpha fact", importance=0.9)
        await mem.store_long_term(AGENT, "beta fact", importance=0.1)
        mem.add_to_short_term(AGENT, SESSION, msg("user", "z" * 40))
        messages = await mem.build_context(AGENT, SESSION, "q", 17)
        assert [m.content for m in messages] == ["Relevant memories:\n- alpha fact", "q"]

    @pytest.mark.asyncio
    async def test_input_over_budget_raises(self) -> None:
        with pytest.raises(AIError) as exc_info:
            await manager().build_context(AGENT, SESSION, "x" * 100, 10)
        assert exc_info.value.code == ErrorCode.CONTEXT_LENGTH_EXCEEDED
        assert exc_info.value.metadata == {"input_tokens": 29, "budget": 10}

    @pytest.mark.asyncio
    async def test_conversation_kept_whole_after_memory(self) -> None:
        mem = manager()
        mem.add_to_short_term(AGENT, SESSION, msg("user", "I live in Oslo."))
        mem.add_to_short_term(AGENT, SESSION, msg("assistant", "Noted."))
        mem.add_to_short_term(AGENT, SESSION, msg("user", "My name is Ada."))
        conversation = [
            msg("user", "My name is Ada."),
            msg("assistant", "Hello Ada."),
            msg("user", "What is my name?"),
        ]
        messages = await mem.build_context(
            AGENT, SESSION, "What is my name?", 4000, conversation=conversation
        )
        assert [m.content for m in messages] == [
            "I live in Oslo.",
            "Noted.",
            "My name is Ada.",
            "Hello Ada.",
            "What is my name?",
        ]

    @pytest.mark.asyncio
    async def test_conversation_survives_tight_budget(self) -> None:
        mem = manager()
        mem.add_to_short_term(AGENT, SESSION, msg("user", "z" * 40))
        conversation = [msg("user", "a" * 40), msg("assistant", "b" * 40), msg("user", "q")]
        messages = await mem.build_context(AGENT, SESSION, "q", 17, conversation=conversation)
        assert messages == conversation

    @pytest.mark.asyncio
    async def test_disabled_returns_only_input(self) -> None:
        mem = manager(enabled=False)
        mem.add_to_short_term(AGENT, SESSION, msg("user", "earlier"))
        messages = await mem.build_context(AGENT, SESSION, "now", 1000)
        assert [m.content for m in messages] == ["now"]


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------


class TestJsonFileMemoryStore:
    """On-disk store: one JSON document per agent."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        mem = MemoryManager(MemoryConfig(storage_dir=tmp_path), clock=Clock())
        assert isinstance(mem.store, JsonFileMemoryStore)
        entry = await mem.store_long_term(AGENT, "Prefers tea", MemoryType.PREFERENCE)

        reopened = JsonFileMemoryStore(tmp_path)
        loaded = await reopened.get(entry.id)
        assert loaded is not None
        assert loaded.content == "Prefers tea"
        assert loaded.type == MemoryType.PREFERENCE
        data = json.loads((tmp_path / "agent-1.json").read_text(encoding="utf-8"))
        assert data["agent_id"] == AGENT

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, tmp_path: Path) -> None:
        store = JsonFileMemoryStore(tmp_path)
        one = MemoryEntry(agent_id="a", type=MemoryType.LONG_TERM, content="one")
        two = MemoryEntry(agent_id="b", type=MemoryType.LONG_TERM, content="two")
        three = MemoryEntry(agent_id="b", type=MemoryType.LONG_TERM, content="three")
        for entry in (one, two, three):
            await store.save(entry)
        assert await store.delete(one.id)
        assert not await store.delete(one.id)
        assert await store.clear("b") == 2
        assert await store.query(MemoryQuery(agent_id="b")) == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_memory_error(self, tmp_path: Path) -> None:
        store = JsonFileMemoryStore(tmp_path)
        store.path_for(AGENT).write_text("{not json", encoding="utf-8")
        with pytest.raises(AIError) as exc_info:
            await store.query(MemoryQuery(agent_id=AGENT))
        assert exc_info.value.code == ErrorCode.MEMORY_ERROR

    def test_path_is_sanitized(self, tmp_path: Path) -> None:
        store = JsonFileMemoryStore(tmp_path)
        assert store.path_for("team/agent 1").name == "team_agent_1.json"


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_clear_all(self) -> None:
        store = InMemoryStore()
        await store.save(MemoryEntry(agent_id="a", type=MemoryType.SEMANTIC, content="x"))
        await store.save(MemoryEntry(agent_id="b", type=MemoryType.SEMANTIC, content="y"))
        assert len(store) == 2
        assert await store.clear() == 2
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


class TestScoring:
    def test_recency_half_life(self) -> None:
        now = datetime(2026, 1, 2, tzinfo=UTC)
        entry = MemoryEntry(
            agent_id=AGENT,
            type=MemoryType.LONG_TERM,
            content="x",
            created_at=now - timedelta(hours=24),
        )
        assert recency_score(entry, now) == pytest.approx(0.5)

    def test_keyword_relevance(self) -> None:
        assert keyword_relevance("metric units", "Prefers metric units") == 1.0
        assert keyword_relevance("metric units", "jazz") == 0.0
        assert keyword_relevance("", "anything") == 0.0

    def test_cosine_similarity_edges(self) -> None:
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_entry_round_trip(self) -> None:
        entry = MemoryEntry(
            agent_id=AGENT, type=MemoryType.PREFERENCE, content="x", tags=["t"], ttl_seconds=5
        )
        assert MemoryEntry.from_dict(entry.to_dict()) == entry
