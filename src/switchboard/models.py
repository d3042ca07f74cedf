"""Data models for requests, responses, memory, safety, and events.

Defines the records that flow through the routing layer: chat messages
and completion requests/responses, static model metadata, live provider
status, memory entries, safety verdicts, observability events, and agent
execution results. All records that leave the core are serializable via
``to_dict()``.

Typical usage::

    from switchboard.models import CompletionRequest, Message

    request = CompletionRequest(
        messages=[
            Message(role="system", content="You are terse."),
            Message(role="user", content="What is a circuit breaker?"),
        ],
        max_tokens=256,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from switchboard.types import (
    AIEventType,
    CircuitState,
    MemoryType,
    ModelFeature,
    ProviderType,
    SafetyAction,
    Severity,
)

if TYPE_CHECKING:
    from switchboard.config import RoutingConfig
    from switchboard.errors import AIError

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error"]

# Qualitative capability levels, lowest first.
CAPABILITY_LEVELS: dict[str, int] = {"basic": 1, "standard": 2, "advanced": 3, "expert": 4}
SPEED_TIERS = ("fast", "medium", "slow")
COST_TIERS = ("free", "low", "medium", "high", "premium")


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# Messages and requests
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    Attributes:
        id: Provider-assigned call identifier, echoed in the tool result.
        name: Tool name.
        arguments: Parsed JSON arguments.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class Message:
    """One chat message.

    Attributes:
        role: Speaker role.
        content: Message text.
        name: Optional participant or tool name.
        tool_call_id: For ``tool`` messages, the call this result answers.
        tool_calls: For ``assistant`` messages, tools the model asked for.
    """

    role: Role
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary, omitting empty fields."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return data


@dataclass
class ToolDefinition:
    """A tool the model may call.

    Attributes:
        name: Tool name.
        description: What the tool does, shown to the model.
        parameters: JSON Schema for the arguments.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


@dataclass
class CompletionRequest:
    """A chat completion request.

    Message order is conversation order and is forwarded verbatim.

    Attributes:
        messages: Ordered chat messages.
        model: Explicit model choice. When set, routing pins this model.
        temperature: Sampling temperature.
        max_tokens: Output token cap.
        top_p: Nucleus sampling parameter.
        stop: Stop sequences.
        tools: Tools the model may call.
        tool_choice: ``"auto"``, ``"none"``, ``"required"``, or a tool name.
        stream: Whether the caller wants incremental output.
        user: End-user identifier forwarded to providers that accept one.
        metadata: Caller-supplied extras (not sent to providers).
    """

    messages: list[Message]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)
    tool_choice: str | None = None
    stream: bool = False
    user: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_messages(self, messages: list[Message]) -> CompletionRequest:
        """Return a copy of this request with a different message list."""
        return replace(self, messages=messages)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "messages": [m.to_dict() for m in self.messages],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "stop": self.stop,
            "tools": [t.to_dict() for t in self.tools],
            "tool_choice": self.tool_choice,
            "stream": self.stream,
        }


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass
class UsageInfo:
    """Token usage for one completion.

    Attributes:
        prompt_tokens: Input tokens.
        completion_tokens: Output tokens.
        total_tokens: Sum of both.
        estimated_cost_usd: Cost from static pricing, if known.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float | None = None

    def __add__(self, other: UsageInfo) -> UsageInfo:
        cost: float | None = None
        if self.estimated_cost_usd is not None or other.estimated_cost_usd is not None:
            cost = (self.estimated_cost_usd or 0.0) + (other.estimated_cost_usd or 0.0)
        return UsageInfo(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost_usd=cost,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": self.estimated_cost_usd,
        }


@dataclass
class CompletionChoice:
    """One generated alternative in a completion response."""

    index: int
    message: Message
    finish_reason: FinishReason = "stop"


@dataclass
class CompletionResponse:
    """Normalized completion result from any provider.

    Attributes:
        id: Response identifier (provider-assigned when available).
        provider: Backend that produced the response.
        model: Model that produced the response.
        choices: Generated alternatives; most callers read ``content``.
        usage: Token usage and estimated cost.
        latency_ms: Wall time of the provider call in milliseconds.
        finish_reason: Why generation stopped.
        cached: True when served from the response cache.
        routing: Serialized ``RoutingDecision`` (via ``to_dict()``).
        safety_checks: Output safety results, when output checks ran.
        created: When the response was received (UTC).
    """

    id: str
    provider: ProviderType
    model: str
    choices: list[CompletionChoice]
    usage: UsageInfo = field(default_factory=UsageInfo)
    latency_ms: int = 0
    finish_reason: FinishReason = "stop"
    cached: bool = False
    routing: dict[str, Any] | None = None
    safety_checks: list[SafetyCheckResult] = field(default_factory=list)
    created: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def content(self) -> str:
        """Text of the first choice, or an empty string."""
        return self.choices[0].message.content if self.choices else ""

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls requested in the first choice."""
        return self.choices[0].message.tool_calls if self.choices else []

    def with_content(self, content: str) -> CompletionResponse:
        """Return a copy whose first choice carries ``content``."""
        if not self.choices:
            choice = CompletionChoice(0, Message(role="assistant", content=content))
            return replace(self, choices=[choice])
        first = self.choices[0]
        new_first = replace(first, message=replace(first.message, content=content))
        return replace(self, choices=[new_first, *self.choices[1:]])

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "provider": self.provider.value,
            "model": self.model,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "finish_reason": self.finish_reason,
            "usage": self.usage.to_dict(),
            "latency_ms": self.latency_ms,
            "cached": self.cached,
            "routing": self.routing,
            "safety_checks": [c.to_dict() for c in self.safety_checks],
            "created": self.created.isoformat(),
        }


@dataclass
class StreamChunk:
    """One incremental piece of a streamed completion.

    Attributes:
        id: Stream identifier shared by all chunks of one response.
        provider: Backend producing the stream.
        model: Model producing the stream.
        delta: New text since the previous chunk.
        tool_calls: Completed tool calls carried by this chunk.
        finish_reason: Set on the final chunk.
        usage: Usage totals, when the backend reports them mid-stream.
    """

    id: str
    provider: ProviderType
    model: str
    delta: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    usage: UsageInfo | None = None


# ---------------------------------------------------------------------------
# Static model metadata and live provider status
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelCapabilities:
    """Qualitative scores for a model.

    Attributes:
        speed: ``fast``, ``medium``, or ``slow``.
        reasoning: ``basic``, ``standard``, ``advanced``, or ``expert``.
        coding: Same scale as ``reasoning``.
        cost_tier: ``free``, ``low``, ``medium``, ``high``, or ``premium``.
    """

    speed: str = "medium"
    reasoning: str = "standard"
    coding: str = "standard"
    cost_tier: str = "medium"

    @property
    def reasoning_level(self) -> int:
        return CAPABILITY_LEVELS.get(self.reasoning, 0)

    @property
    def coding_level(self) -> int:
        return CAPABILITY_LEVELS.get(self.coding, 0)


@dataclass(frozen=True)
class ModelInfo:
    """Static metadata for one model on one provider.

    Attributes:
        id: Provider-specific model identifier.
        provider: Owning backend.
        name: Display name.
        context_window: Maximum prompt plus output tokens.
        max_output_tokens: Maximum output tokens.
        input_cost_per_1k: USD per 1,000 input tokens.
        output_cost_per_1k: USD per 1,000 output tokens.
        features: Supported capability flags.
        capabilities: Qualitative scores.
        latency_ms: Typical time to first byte, overriding the speed tier.
        recommended: Shown first in listings.
        deprecated: Still routable but flagged in listings.
    """

    id: str
    provider: ProviderType
    name: str
    context_window: int
    max_output_tokens: int
    input_cost_per_1k: float
    output_cost_per_1k: float
    features: frozenset[ModelFeature] = frozenset({ModelFeature.CHAT, ModelFeature.STREAMING})
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    latency_ms: float | None = None
    recommended: bool = False
    deprecated: bool = False

    def supports(self, features: frozenset[ModelFeature] | set[ModelFeature]) -> bool:
        """Whether this model advertises every feature in ``features``."""
        return set(features) <= self.features

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "provider": self.provider.value,
            "name": self.name,
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "input_cost_per_1k": self.input_cost_per_1k,
            "output_cost_per_1k": self.output_cost_per_1k,
            "features": sorted(f.value for f in self.features),
            "capabilities": {
                "speed": self.capabilities.speed,
                "reasoning": self.capabilities.reasoning,
                "coding": self.capabilities.coding,
                "cost_tier": self.capabilities.cost_tier,
            },
            "latency_ms": self.latency_ms,
            "recommended": self.recommended,
            "deprecated": self.deprecated,
        }


@dataclass
class ProviderStatus:
    """Live health snapshot for one provider.

    Attributes:
        provider: Backend this status describes.
        available: Enabled, circuit not open, and within rate limits.
        latency_ms: Smoothed observed latency, or None before any call.
        error_rate: Failure ratio over the breaker's rolling window.
        last_error: Message of the most recent failure.
        last_checked: When the status was last updated (UTC).
        circuit_state: Current breaker state.
    """

    provider: ProviderType
    available: bool
    latency_ms: float | None = None
    error_rate: float = 0.0
    last_error: str | None = None
    last_checked: datetime | None = None
    circuit_state: CircuitState = CircuitState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "provider": self.provider.value,
            "available": self.available,
            "latency_ms": self.latency_ms,
            "error_rate": self.error_rate,
            "last_error": self.last_error,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "circuit_state": self.circuit_state.value,
        }


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass
class MemoryEntry:
    """One stored memory.

    Attributes:
        agent_id: Owning agent.
        type: Memory kind.
        content: Memory text.
        id: Unique identifier.
        importance: Weight in [0, 1] used for ranking and trimming.
        tags: Free-form labels used by tag filters.
        session_id: Session the memory came from, if any.
        user_id: End user the memory concerns, if any.
        source: Where the memory came from (``conversation``, ``tool``...).
        metadata: Extra structured data.
        embedding: Optional vector for similarity search.
        created_at: Creation time (UTC).
        accessed_at: Last retrieval time (UTC).
        ttl_seconds: Lifetime after creation; None means no expiry.
    """

    agent_id: str
    type: MemoryType
    content: str
    id: str = field(default_factory=lambda: _new_id("mem"))
    importance: float = 0.5
    tags: list[str] = field(default_factory=list)
    session_id: str | None = None
    user_id: str | None = None
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    accessed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ttl_seconds: float | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.importance <= 1.0:
            raise ValueError(f"importance must be in [0, 1], got {self.importance}")

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the entry's TTL has elapsed."""
        if self.ttl_seconds is None:
            return False
        now = now or datetime.now(UTC)
        return (now - self.created_at).total_seconds() > self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "type": self.type.value,
            "content": self.content,
            "importance": self.importance,
            "tags": self.tags,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "source": self.source,
            "metadata": self.metadata,
            "embedding": self.embedding,
            "created_at": self.created_at.isoformat(),
            "accessed_at": self.accessed_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryEntry:
        """Deserialize from a JSON-compatible dictionary.

        Args:
            data: Dictionary with MemoryEntry fields.

        Returns:
            MemoryEntry instance.
        """
        return cls(
            id=data["id"],
            agent_id=data["agent_id"],
            type=MemoryType(data["type"]),
            content=data["content"],
            importance=float(data.get("importance", 0.5)),
            tags=list(data.get("tags", [])),
            session_id=data.get("session_id"),
            user_id=data.get("user_id"),
            source=data.get("source"),
            metadata=data.get("metadata", {}),
            embedding=data.get("embedding"),
            created_at=datetime.fromisoformat(data["created_at"]),
            accessed_at=datetime.fromisoformat(data.get("accessed_at", data["created_at"])),
            ttl_seconds=data.get("ttl_seconds"),
        )


@dataclass
class MemoryQuery:
    """Filter and ranking parameters for long-term retrieval.

    Attributes:
        agent_id: Owning agent (required).
        query: Free text used for relevance scoring.
        types: Restrict to these memory kinds.
        tags: Keep entries carrying at least one of these tags.
        start: Earliest creation time, inclusive.
        end: Latest creation time, inclusive.
        min_importance: Drop entries below this importance.
        limit: Maximum results.
    """

    agent_id: str
    query: str = ""
    types: list[MemoryType] | None = None
    tags: list[str] | None = None
    start: datetime | None = None
    end: datetime | None = None
    min_importance: float = 0.0
    limit: int = 10


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


@dataclass
class SafetyCheckResult:
    """Verdict from one safety check.

    Attributes:
        passed: Whether the check found nothing objectionable.
        check: Name of the check that produced this result.
        category: Finding category (``prompt_injection``, ``pii``...).
        severity: How serious the finding is.
        action: Recommended handling.
        reason: Human-readable explanation.
        metadata: Structured detail (matched patterns, thresholds...).
    """

    passed: bool
    check: str
    category: str = "general"
    severity: Severity = Severity.LOW
    action: SafetyAction = SafetyAction.ALLOW
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def offending(self) -> bool:
        """True when the check failed or recommends anything but allow."""
        return not self.passed or self.action != SafetyAction.ALLOW

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "passed": self.passed,
            "check": self.check,
            "category": self.category,
            "severity": self.severity.value,
            "action": self.action.value,
            "reason": self.reason,
            "metadata": self.metadata,
        }


@dataclass
class TransactionContext:
    """A monetary action to be screened before execution.

    Attributes:
        value_ton: Amount of this transaction.
        daily_total_ton: Amount already spent in the rolling day.
        transaction_type: ``transfer``, ``swap``, ``stake``...
        is_new_destination: Whether the recipient has never been paid.
        destination: Recipient address, for reporting.
    """

    value_ton: float
    daily_total_ton: float = 0.0
    transaction_type: str = "transfer"
    is_new_destination: bool = False
    destination: str | None = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AIEvent:
    """Immutable observability record delivered to the event sink.

    Attributes:
        type: Event type.
        id: Unique identifier.
        timestamp: Emission time (UTC).
        request_id: Request this event belongs to.
        agent_id: Agent on whose behalf the request ran.
        user_id: End user, if known.
        session_id: Conversation session, if known.
        provider: Backend involved, if any.
        model: Model involved, if any.
        latency_ms: Duration associated with the event.
        usage: Token usage, for completion events.
        success: Outcome flag, for terminal events.
        error: Error message, for failure events.
        metadata: Event-specific detail.
    """

    type: AIEventType
    id: str = field(default_factory=lambda: _new_id("evt"))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    request_id: str | None = None
    agent_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    provider: ProviderType | None = None
    model: str | None = None
    latency_ms: float | None = None
    usage: UsageInfo | None = None
    success: bool | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "provider": self.provider.value if self.provider else None,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "usage": self.usage.to_dict() if self.usage else None,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Agent execution
# ---------------------------------------------------------------------------


@dataclass
class AgentConfig:
    """Configuration for one agent run.

    Attributes:
        id: Agent identifier, also the memory owner key.
        name: Display name.
        system_prompt: Prepended as the first system message.
        user_id: End user the agent acts for.
        routing: Routing override for this agent's completions.
        memory_enabled: Whether to read and write memory.
        tools: Tools offered to the model.
        max_iterations: Upper bound on completion calls per run.
        timeout_ms: Wall-clock bound on the whole run.
        temperature: Sampling temperature override.
        max_tokens: Output token cap override.
    """

    id: str
    name: str = ""
    system_prompt: str = ""
    user_id: str | None = None
    routing: RoutingConfig | None = None
    memory_enabled: bool = True
    tools: list[ToolDefinition] = field(default_factory=list)
    max_iterations: int = 10
    timeout_ms: int = 120_000
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class ExecutionContext:
    """Identity and bookkeeping for one request or agent run.

    Attributes:
        agent_id: Agent the request belongs to.
        session_id: Conversation session key for short-term memory.
        user_id: End user, if known.
        request_id: Unique request identifier, echoed on events.
        start_time: When the request began (UTC).
        metadata: Caller extras passed to tool executors.
    """

    agent_id: str
    session_id: str
    user_id: str | None = None
    request_id: str = field(default_factory=lambda: _new_id("req"))
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool call.

    Attributes:
        tool_call_id: Call this result answers.
        name: Tool name.
        success: Whether the tool ran without error.
        output: Tool return value (JSON-serializable).
        error: Error message on failure.
        latency_ms: Tool wall time.
    """

    tool_call_id: str
    name: str
    success: bool
    output: Any = None
    error: str | None = None
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }


@dataclass
class ExecutionMetrics:
    """Timing and usage totals for an agent run."""

    total_latency_ms: int = 0
    llm_latency_ms: int = 0
    tool_latency_ms: int = 0
    memory_latency_ms: int = 0
    usage: UsageInfo = field(default_factory=UsageInfo)
    iterations: int = 0
    retries: int = 0
    provider: ProviderType | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "total_latency_ms": self.total_latency_ms,
            "llm_latency_ms": self.llm_latency_ms,
            "tool_latency_ms": self.tool_latency_ms,
            "memory_latency_ms": self.memory_latency_ms,
            "usage": self.usage.to_dict(),
            "iterations": self.iterations,
            "retries": self.retries,
            "provider": self.provider.value if self.provider else None,
            "model": self.model,
        }


@dataclass
class ExecutionResult:
    """Outcome of ``AIService.execute_agent``.

    Failures are reported here rather than raised.

    Attributes:
        success: Whether the run produced a final response.
        response: Final completion, when successful.
        messages: Full conversation including tool exchanges.
        tool_results: Every tool call made during the run.
        memory_updates: Memory entries written during the run.
        safety_checks: Input and output safety results.
        metrics: Timing and usage totals.
        error: Terminal error, when unsuccessful.
    """

    success: bool
    response: CompletionResponse | None = None
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    memory_updates: list[MemoryEntry] = field(default_factory=list)
    safety_checks: list[SafetyCheckResult] = field(default_factory=list)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    error: AIError | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "success": self.success,
            "response": self.response.to_dict() if self.response else None,
            "tool_results": [r.to_dict() for r in self.tool_results],
            "memory_updates": [m.id for m in self.memory_updates],
            "safety_checks": [c.to_dict() for c in self.safety_checks],
            "metrics": self.metrics.to_dict(),
            "error": self.error.to_dict() if self.error else None,
        }
