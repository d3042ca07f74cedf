"""Agent memory: short-term turn buffers and long-term stores.

Short-term memory is a bounded ring buffer of recent turns per
``(agent_id, session_id)``. Long-term memory goes through a
``MemoryStore``: ``InMemoryStore`` for tests and embedding applications,
``JsonFileMemoryStore`` for a small on-disk store (one JSON document per
agent under ``~/.switchboard/memory/``).

``MemoryManager.build_context`` assembles the message list sent to a
model: relevant long-term facts as one system message, then recent turns,
then the current input, trimmed to a token budget.

Typical usage::

    memory = MemoryManager(config.memory)
    memory.add_to_short_term("agent-1", "session-1", Message(role="user", content="hi"))
    await memory.store_long_term("agent-1", "Prefers metric units", MemoryType.PREFERENCE)
    messages = await memory.build_context("agent-1", "session-1", "How far is 5 miles?", 4000)
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from switchboard.analysis import extract_keywords
from switchboard.config import MemoryConfig
from switchboard.errors import AIError
from switchboard.models import MemoryEntry, MemoryQuery, Message
from switchboard.pricing import estimate_message_tokens
from switchboard.types import ErrorCode, MemoryType

logger = logging.getLogger(__name__)

IMPORTANCE_WEIGHT = 0.5
RECENCY_WEIGHT = 0.3
RELEVANCE_WEIGHT = 0.2
RECENCY_HALF_LIFE_HOURS = 24.0

# Memory types surfaced in assembled context.
CONTEXT_TYPES = [MemoryType.PREFERENCE, MemoryType.SEMANTIC, MemoryType.LONG_TERM]
CONTEXT_FACT_LIMIT = 10

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EmbeddingProvider(ABC):
    """Turns text into a vector for similarity ranking."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding of ``text``."""
        ...


def matches_query(entry: MemoryEntry, query: MemoryQuery, now: datetime) -> bool:
    """Whether ``entry`` passes every filter in ``query`` (ranking aside).

    Args:
        entry: Candidate entry.
        query: Filters to apply.
        now: Reference time for TTL expiry.

    Returns:
        True when the entry belongs to the agent, is unexpired, and meets
        the type, tag, time range, and importance filters.
    """
    if entry.agent_id != query.agent_id or entry.is_expired(now):
        return False
    if query.types and entry.type not in query.types:
        return False
    if query.tags and not set(query.tags) & set(entry.tags):
        return False
    if query.start and entry.created_at < query.start:
        return False
    if query.end and entry.created_at > query.end:
        return False
    return entry.importance >= query.min_importance


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class MemoryStore(ABC):
    """Persistence interface for long-term memory."""

    @abstractmethod
    async def save(self, entry: MemoryEntry) -> None:
        """Insert or replace an entry."""
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> MemoryEntry | None:
        """Fetch an entry by id."""
        ...

    @abstractmethod
    async def query(self, query: MemoryQuery, now: datetime | None = None) -> list[MemoryEntry]:
        """Return every entry passing ``query``'s filters, unranked."""
        ...

    @abstractmethod
    async def delete(self, entry_id: str) -> bool:
        """Remove an entry; True if it existed."""
        ...

    @abstractmethod
    async def clear(self, agent_id: str | None = None) -> int:
        """Remove one agent's entries, or all; return the count removed."""
        ...


class InMemoryStore(MemoryStore):
    """Process-local store backed by a dict."""

    def __init__(self) -> None:
        self._entries: dict[str, MemoryEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def save(self, entry: MemoryEntry) -> None:
        async with self._lock:
            self._entries[entry.id] = entry

    async def get(self, entry_id: str) -> MemoryEntry | None:
        return self._entries.get(entry_id)

    async def query(self, query: MemoryQuery, now: datetime | None = None) -> list[MemoryEntry]:
        now = now or _utcnow()
        async with self._lock:
            return [e for e in self._entries.values() if matches_query(e, query, now)]

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def clear(self, agent_id: str | None = None) -> int:
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if agent_id in (None, e.agent_id)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)


class JsonFileMemoryStore(MemoryStore):
    """One JSON document per agent in a directory.

    Each file holds ``{"agent_id": ..., "entries": [...]}``. Files are
    rewritten whole on every change, which suits the small per-agent
    volumes this store is meant for.

    Args:
        directory: Where agent files live; created on first write.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    def path_for(self, agent_id: str) -> Path:
        return self.directory / f"{_UNSAFE_FILENAME.sub('_', agent_id)}.json"

    async def save(self, entry: MemoryEntry) -> None:
        async with self._lock:
            entries = self._read(entry.agent_id)
            entries[entry.id] = entry
            self._write(entry.agent_id, entries)

    async def get(self, entry_id: str) -> MemoryEntry | None:
        async with self._lock:
            for agent_id in self._agents():
                entry = self._read(agent_id).get(entry_id)
                if entry is not None:
                    return entry
        return None

    async def query(self, query: MemoryQuery, now: datetime | None = None) -> list[MemoryEntry]:
        now = now or _utcnow()
        async with self._lock:
            entries = self._read(query.agent_id)
        return [e for e in entries.values() if matches_query(e, query, now)]

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            for agent_id in self._agents():
                entries = self._read(agent_id)
                if entries.pop(entry_id, None) is not None:
                    self._write(agent_id, entries)
                    return True
        return False

    async def clear(self, agent_id: str | None = None) -> int:
        async with self._lock:
            agents = [agent_id] if agent_id is not None else self._agents()
            removed = 0
            for agent in agents:
                path = self.path_for(agent)
                if path.exists():
                    removed += len(self._read(agent))
                    path.unlink()
            return removed

    # -- file helpers ---------------------------------------------------------

    def _agents(self) -> list[str]:
        if not self.directory.exists():
            return []
        agents: list[str] = []
        for filepath in sorted(self.directory.glob("*.json")):
            try:
                with open(filepath, encoding="utf-8") as f:
                    agents.append(json.load(f)["agent_id"])
            except (json.JSONDecodeError, KeyError):
                logger.warning("Skipping unreadable memory file %s", filepath)
        return agents

    def _read(self, agent_id: str) -> dict[str, MemoryEntry]:
        path = self.path_for(agent_id)
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            entries = [MemoryEntry.from_dict(item) for item in data.get("entries", [])]
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            raise AIError(
                f"Corrupt memory file {path}: {exc}", ErrorCode.MEMORY_ERROR, retryable=False
            ) from exc
        return {e.id: e for e in entries}

    def _write(self, agent_id: str, entries: dict[str, MemoryEntry]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {
            "agent_id": agent_id,
            "entries": [e.to_dict() for e in entries.values()],
        }
        with open(self.path_for(agent_id), "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def recency_score(entry: MemoryEntry, now: datetime) -> float:
    """Exponential decay with a 24-hour half-life, in (0, 1]."""
    age_hours = max(0.0, (now - entry.created_at).total_seconds() / 3600)
    return 0.5 ** (age_hours / RECENCY_HALF_LIFE_HOURS)


def keyword_relevance(query_text: str, content: str) -> float:
    """Share of the query's keywords that appear in ``content``."""
    wanted = set(extract_keywords(query_text, limit=50))
    if not wanted:
        return 0.0
    have = set(extract_keywords(content, limit=200))
    return len(wanted & have) / len(wanted)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped to [0, 1]; 0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return max(0.0, min(1.0, dot / norm))


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class MemoryManager:
    """Short-term buffers, long-term retrieval, and context assembly.

    Args:
        config: Memory sizing and feature switches.
        store: Long-term store. Defaults to ``JsonFileMemoryStore`` when
            ``config.storage_dir`` is set, else ``InMemoryStore``.
        embedder: Embedding source used when ``config.vector_search``.
        clock: Current-time source (UTC), injectable for tests.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        store: MemoryStore | None = None,
        embedder: EmbeddingProvider | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or MemoryConfig()
        if store is None:
            store = (
                JsonFileMemoryStore(self.config.storage_dir)
                if self.config.storage_dir
                else InMemoryStore()
            )
        self.store = store
        self._embedder = embedder
        self._clock = clock
        self._buffers: dict[tuple[str, str], deque[MemoryEntry]] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # -- short-term -----------------------------------------------------------

    def _session(
        self, key: tuple[str, str], *, create: bool = True
    ) -> tuple[threading.Lock, deque[MemoryEntry]] | None:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                if not create:
                    return None
                lock = self._locks[key] = threading.Lock()
                self._buffers[key] = deque(maxlen=max(1, self.config.short_term_capacity))
            return lock, self._buffers[key]

    def add_to_short_term(self, agent_id: str, session_id: str, message: Message) -> MemoryEntry:
        """Append a turn to the session's ring buffer.

        The oldest turn is evicted once ``short_term_capacity`` is reached.

        Args:
            agent_id: Owning agent.
            session_id: Conversation session.
            message: The turn to remember.

        Returns:
            The stored entry.
        """
        metadata: dict[str, Any] = {"role": message.role}
        if message.name:
            metadata["name"] = message.name
        if message.tool_call_id:
            metadata["tool_call_id"] = message.tool_call_id
        now = self._clock()
        entry = MemoryEntry(
            agent_id=agent_id,
            type=MemoryType.SHORT_TERM,
            content=message.content,
            session_id=session_id,
            source="conversation",
            metadata=metadata,
            created_at=now,
            accessed_at=now,
        )
        lock, buffer = self._session((agent_id, session_id))
        with lock:
            buffer.append(entry)
        return entry

    def get_short_term(self, agent_id: str, session_id: str) -> list[MemoryEntry]:
        """Buffered turns, oldest first."""
        session = self._session((agent_id, session_id), create=False)
        if session is None:
            return []
        lock, buffer = session
        with lock:
            return list(buffer)

    def short_term_messages(self, agent_id: str, session_id: str) -> list[Message]:
        """Buffered turns rebuilt as chat messages, oldest first."""
        return [_entry_to_message(e) for e in self.get_short_term(agent_id, session_id)]

    def clear_session(self, agent_id: str, session_id: str) -> None:
        """Forget the session's buffer."""
        with self._registry_lock:
            self._locks.pop((agent_id, session_id), None)
            self._buffers.pop((agent_id, session_id), None)

    def session_count(self) -> int:
        """Sessions currently holding a buffer."""
        with self._registry_lock:
            return len(self._buffers)

    # -- long-term ------------------------------------------------------------

    async def store_long_term(
        self,
        agent_id: str,
        content: str,
        type: MemoryType = MemoryType.LONG_TERM,
        metadata: dict[str, Any] | None = None,
        importance: float = 0.5,
        ttl_seconds: float | None = None,
        *,
        tags: list[str] | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        source: str | None = None,
    ) -> MemoryEntry:
        """Persist a memory through the store.

        Args:
            agent_id: Owning agent.
            content: Memory text.
            type: Memory kind; ``short_term`` is rejected.
            metadata: Extra structured data.
            importance: Weight in [0, 1].
            ttl_seconds: Lifetime; None keeps it until forgotten.
            tags: Labels used by tag filters.
            session_id: Originating session.
            user_id: End user the memory concerns.
            source: Where the memory came from.

        Returns:
            The stored entry.

        Raises:
            AIError: ``MEMORY_ERROR`` for a short-term type, an importance
                outside [0, 1], or a store failure.
        """
        if type == MemoryType.SHORT_TERM:
            raise AIError(
                "Short-term memories go through add_to_short_term",
                ErrorCode.MEMORY_ERROR,
            )
        now = self._clock()
        try:
            entry = MemoryEntry(
                agent_id=agent_id,
                type=type,
                content=content,
                importance=importance,
                tags=list(tags or []),
                session_id=session_id,
                user_id=user_id,
                source=source,
                metadata=dict(metadata or {}),
                created_at=now,
                accessed_at=now,
                ttl_seconds=ttl_seconds,
            )
        except ValueError as exc:
            raise AIError(str(exc), ErrorCode.MEMORY_ERROR) from exc
        if self.config.vector_search and self._embedder is not None:
            entry.embedding = await self._embedder.embed(content)
        await self._store_call(self.store.save(entry))
        logger.debug("Stored %s memory %s for agent %s", type, entry.id, agent_id)
        return entry

    async def retrieve(self, query: MemoryQuery) -> list[MemoryEntry]:
        """Return the best-ranked entries matching ``query``.

        Score is ``0.5 x importance + 0.3 x recency + 0.2 x relevance``.
        Relevance is embedding cosine similarity when vector search is on
        and both sides have embeddings, else keyword overlap. Returned
        entries get their ``accessed_at`` refreshed.

        Args:
            query: Filters, free text, and limit.

        Returns:
            Up to ``query.limit`` entries, best first.
        """
        now = self._clock()
        candidates = await self._store_call(self.store.query(query, now))
        query_vector: list[float] | None = None
        if self.config.vector_search and self._embedder is not None and query.query:
            query_vector = await self._embedder.embed(query.query)

        def score(entry: MemoryEntry) -> float:
            if query_vector is not None and entry.embedding:
                relevance = cosine_similarity(query_vector, entry.embedding)
            else:
                relevance = keyword_relevance(query.query, entry.content)
            return (
                IMPORTANCE_WEIGHT * entry.importance
                + RECENCY_WEIGHT * recency_score(entry, now)
                + RELEVANCE_WEIGHT * relevance
            )

        ranked = sorted(candidates, key=score, reverse=True)[: max(0, query.limit)]
        for entry in ranked:
            entry.accessed_at = now
            await self._store_call(self.store.save(entry))
        return ranked

    async def forget(self, entry_id: str) -> bool:
        """Delete a long-term entry; True if it existed."""
        return await self._store_call(self.store.delete(entry_id))

    # -- context --------------------------------------------------------------

    async def build_context(
        self,
        agent_id: str,
        session_id: str,
        current_input: str,
        token_budget: int,
        *,
        conversation: list[Message] | None = None,
    ) -> list[Message]:
        """Assemble memory-backed context for one turn.

        Order: a system message of relevant long-term facts (best first),
        short-term turns oldest to newest, then ``current_input`` as a user
        message. Over budget, the oldest turn goes first, then the
        lowest-ranked fact. The current input is never cut.

        When ``conversation`` is given it takes the place of the bare
        current input: those messages are kept whole and in order, and
        buffered turns already present in it are not repeated.

        Args:
            agent_id: Owning agent.
            session_id: Conversation session.
            current_input: The new user message; drives fact retrieval.
            token_budget: Token ceiling for the whole list.
            conversation: Caller messages to send verbatim after memory.

        Returns:
            Messages whose estimated tokens fit ``token_budget``.

        Raises:
            AIError: ``CONTEXT_LENGTH_EXCEEDED`` when the current input
                alone exceeds the budget.
        """
        current = Message(role="user", content=current_input)
        current_tokens = estimate_message_tokens(current)
        if current_tokens > token_budget:
            raise AIError(
                f"Input needs ~{current_tokens} tokens but the context budget is {token_budget}",
                ErrorCode.CONTEXT_LENGTH_EXCEEDED,
                metadata={"input_tokens": current_tokens, "budget": token_budget},
            )
        tail = list(conversation) if conversation else [current]
        if not self.enabled:
            return tail

        facts = [
            e.content
            for e in await self.retrieve(
                MemoryQuery(
                    agent_id=agent_id,
                    query=current_input,
                    types=CONTEXT_TYPES,
                    limit=CONTEXT_FACT_LIMIT,
                )
            )
        ]
        seen = {(m.role, m.content) for m in tail}
        turns = [
            m
            for m in self.short_term_messages(agent_id, session_id)
            if (m.role, m.content) not in seen
        ]

        while True:
            messages = _assemble(facts, turns, tail)
            used = sum(estimate_message_tokens(m) for m in messages)
            if used <= token_budget:
                return messages
            if turns:
                turns.pop(0)
            elif facts:
                facts.pop()
            else:
                return tail

    # -- internals ------------------------------------------------------------

    @staticmethod
    async def _store_call(awaitable: Any) -> Any:
        try:
            return await awaitable
        except AIError:
            raise
        except OSError as exc:
            raise AIError(f"Memory store failed: {exc}", ErrorCode.MEMORY_ERROR) from exc


def _assemble(facts: list[str], turns: list[Message], tail: list[Message]) -> list[Message]:
    messages: list[Message] = []
    if facts:
        body = "\n".join(f"- {fact}" for fact in facts)
        messages.append(Message(role="system", content=f"Relevant memories:\n{body}"))
    messages.extend(turns)
    messages.extend(tail)
    return messages


def _entry_to_message(entry: MemoryEntry) -> Message:
    role = entry.metadata.get("role", "user")
    return Message(
        role=role,
        content=entry.content,
        name=entry.metadata.get("name"),
        tool_call_id=entry.metadata.get("tool_call_id"),
    )
