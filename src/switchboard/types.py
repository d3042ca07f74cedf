"""Core routing types and shared enumerations.

Defines the enums and immutable routing records used across the provider
layer, the router, the safety pipeline, and the service. Kept separate
from ``models.py`` so ``models.py`` can attach serialized routing
decisions to responses without a circular import.

All enums inherit from ``StrEnum`` so values serialize naturally to JSON
and compare equal to their string form.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ProviderType(StrEnum):
    """Supported inference backends.

    Values double as registry keys and as the provider names used in
    ``config.toml`` (``[providers.<type>]``).
    """

    GROQ = "groq"
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    XAI = "xai"
    OPENROUTER = "openrouter"
    LOCAL = "local"


class RoutingMode(StrEnum):
    """Policy used by the router to order candidates."""

    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"
    COST_OPTIMIZED = "cost_optimized"
    CUSTOM = "custom"


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class ModelFeature(StrEnum):
    """Capability flags advertised by a model."""

    CHAT = "chat"
    COMPLETION = "completion"
    STREAMING = "streaming"
    TOOL_USE = "tool_use"
    VISION = "vision"
    JSON_MODE = "json_mode"
    CODE = "code"
    REASONING = "reasoning"


class MemoryType(StrEnum):
    """Kinds of memory entries."""

    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PREFERENCE = "preference"


class Severity(StrEnum):
    """Safety finding severity, ordered by ``rank``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric ordering: low=0 through critical=3."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SafetyAction(StrEnum):
    """Recommended action attached to a safety check result."""

    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"
    ESCALATE = "escalate"


class AIEventType(StrEnum):
    """Observability event types emitted by the service."""

    REQUEST_STARTED = "request_started"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    PROVIDER_FALLBACK = "provider_fallback"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    RATE_LIMIT_HIT = "rate_limit_hit"
    SAFETY_VIOLATION = "safety_violation"
    TOOL_EXECUTED = "tool_executed"
    MEMORY_ACCESSED = "memory_accessed"
    ROUTING_DECISION = "routing_decision"


class ErrorCode(StrEnum):
    """Terminal error codes carried by ``AIError``."""

    PROVIDER_ERROR = "PROVIDER_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CONTEXT_LENGTH_EXCEEDED = "CONTEXT_LENGTH_EXCEEDED"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    TIMEOUT = "TIMEOUT"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    NO_AVAILABLE_PROVIDERS = "NO_AVAILABLE_PROVIDERS"
    SAFETY_VIOLATION = "SAFETY_VIOLATION"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    MEMORY_ERROR = "MEMORY_ERROR"
    ROUTING_ERROR = "ROUTING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class RoutingAlternative:
    """A ranked fallback candidate.

    Attributes:
        provider: Backend that would serve the request.
        model: Model identifier on that backend.
        score: Mode-specific score (higher is better).
    """

    provider: ProviderType
    model: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {"provider": self.provider.value, "model": self.model, "score": self.score}


@dataclass(frozen=True)
class SkippedProvider:
    """A provider left out of the candidate set, with the reason."""

    provider: ProviderType
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {"provider": self.provider.value, "reason": self.reason}


@dataclass(frozen=True)
class RoutingDecision:
    """Record of how a request was routed.

    Immutable once issued. A fallback never edits a decision; the
    service walks ``alternatives`` and records each switch as an event.

    Attributes:
        provider: Chosen backend.
        model: Chosen model identifier.
        reason: Human-readable explanation of the choice.
        mode: Routing mode that was in effect.
        score: Score of the chosen candidate under ``mode``.
        alternatives: Ranked fallback candidates, best first.
        estimated_latency_ms: Latency estimate from static metadata.
        estimated_cost_usd: Cost estimate for the request's token estimate.
        skipped: Providers excluded for availability, with reasons.
    """

    provider: ProviderType
    model: str
    reason: str
    mode: RoutingMode
    score: float = 0.0
    alternatives: tuple[RoutingAlternative, ...] = ()
    estimated_latency_ms: float = 0.0
    estimated_cost_usd: float = 0.0
    skipped: tuple[SkippedProvider, ...] = field(default_factory=tuple)

    def candidates(self) -> list[tuple[ProviderType, str]]:
        """Return the chosen pair followed by alternatives, in attempt order."""
        return [(self.provider, self.model)] + [(a.provider, a.model) for a in self.alternatives]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary.

        Returns:
            Dictionary with provider and mode as strings, alternatives and
            skipped providers as nested dicts.
        """
        return {
            "provider": self.provider.value,
            "model": self.model,
            "reason": self.reason,
            "mode": self.mode.value,
            "score": self.score,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "estimated_latency_ms": self.estimated_latency_ms,
            "estimated_cost_usd": self.estimated_cost_usd,
            "skipped": [s.to_dict() for s in self.skipped],
        }
