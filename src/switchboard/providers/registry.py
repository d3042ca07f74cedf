"""Provider registry.

Owns the configured adapters together with each one's circuit breaker,
rate limiter, static model metadata, and live health figures. The router
reads availability from here; the service reserves and reports calls
through ``acquire`` / ``record_outcome`` / ``release``.

Typical usage::

    registry = ProviderRegistry(config.circuit_breaker)
    registry.register(create_provider(pcfg), pcfg)

    entry = registry.acquire(ProviderType.GROQ, tokens=1200)
    try:
        response = await entry.adapter.complete(request, model)
    except AIError as exc:
        registry.record_outcome(entry.type, success=False, latency_ms=0, error=exc)
        raise
    registry.record_outcome(entry.type, success=True, latency_ms=response.latency_ms)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from switchboard.config import CircuitBreakerConfig, ProviderConfig
from switchboard.errors import AIError
from switchboard.models import ModelInfo, ProviderStatus
from switchboard.providers.base import Provider
from switchboard.providers.catalog import DEFAULT_MODELS
from switchboard.providers.circuit import CircuitBreaker
from switchboard.providers.rate_limit import RateLimiter
from switchboard.types import AIEventType, CircuitState, ErrorCode, ProviderType

logger = logging.getLogger(__name__)

# Weight of the newest observation in the smoothed latency.
LATENCY_EWMA_ALPHA = 0.3

RegistryEventSink = Callable[[AIEventType, ProviderType, dict[str, Any]], None]


@dataclass
class ProviderEntry:
    """One registered backend and its live state.

    Attributes:
        adapter: Wire-format adapter.
        config: Static provider configuration.
        breaker: Circuit breaker owned by this entry.
        limiter: Client-side rate limiter owned by this entry.
        models: Static model metadata used for routing.
        latency_ms: Smoothed observed latency, None before any call.
        last_error: Message of the most recent failure.
        last_checked: Time of the most recent outcome (UTC).
        total_requests: Outcomes recorded.
        total_failures: Failed outcomes recorded.
    """

    adapter: Provider
    config: ProviderConfig
    breaker: CircuitBreaker
    limiter: RateLimiter
    models: list[ModelInfo]
    latency_ms: float | None = None
    last_error: str | None = None
    last_checked: datetime | None = None
    total_requests: int = 0
    total_failures: int = 0
    _model_index: dict[str, ModelInfo] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._model_index = {m.id: m for m in self.models}

    @property
    def type(self) -> ProviderType:
        return self.config.type

    @property
    def default_model(self) -> str | None:
        """Configured default model, else the catalog's recommended one."""
        if self.config.default_model:
            return self.config.default_model
        recommended = DEFAULT_MODELS.get(self.type)
        if recommended and recommended in self._model_index:
            return recommended
        return self.models[0].id if self.models else None

    def model(self, model_id: str) -> ModelInfo | None:
        return self._model_index.get(model_id)


class ProviderRegistry:
    """Registry of adapters keyed by provider type.

    Args:
        breaker_config: Tuning applied to every provider's breaker.
        clock: Monotonic time source shared by breakers and limiters.
        on_event: Called as ``(event_type, provider, metadata)`` for
            circuit transitions and local rate-limit rejections.
    """

    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_event: RegistryEventSink | None = None,
    ) -> None:
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._clock = clock
        self._on_event = on_event
        self._entries: dict[ProviderType, ProviderEntry] = {}

    # -- registration ---------------------------------------------------------

    def register(
        self,
        adapter: Provider,
        config: ProviderConfig,
        models: list[ModelInfo] | None = None,
    ) -> ProviderEntry:
        """Add a backend.

        Args:
            adapter: Wire-format adapter for the backend.
            config: Static configuration; ``config.type`` is the key.
            models: Model metadata; defaults to the adapter's catalog.

        Returns:
            The new registry entry.

        Raises:
            ValueError: If the provider type is already registered.
        """
        if config.type in self._entries:
            raise ValueError(f"Provider '{config.type.value}' is already registered")
        bc = self._breaker_config
        breaker = CircuitBreaker(
            config.type.value,
            failure_threshold=bc.failure_threshold,
            window_size=bc.window_size,
            min_calls=bc.min_calls,
            error_rate_threshold=bc.error_rate_threshold,
            recovery_time=bc.recovery_time_seconds,
            half_open_max_calls=bc.half_open_max_calls,
            clock=self._clock,
            on_transition=self._circuit_transition,
        )
        entry = ProviderEntry(
            adapter=adapter,
            config=config,
            breaker=breaker,
            limiter=RateLimiter.from_config(config.rate_limit, clock=self._clock),
            models=list(models) if models is not None else adapter.models,
        )
        self._entries[config.type] = entry
        logger.debug("Registered provider %s with %d models", config.type, len(entry.models))
        return entry

    def unregister(self, provider: ProviderType) -> ProviderEntry | None:
        return self._entries.pop(provider, None)

    def get(self, provider: ProviderType) -> ProviderEntry | None:
        """Return the entry for ``provider``, or None if not registered."""
        return self._entries.get(provider)

    def __contains__(self, provider: object) -> bool:
        return provider in self._entries

    def __iter__(self) -> Iterator[ProviderEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[ProviderEntry]:
        """All entries, by priority then provider name."""
        return sorted(self._entries.values(), key=lambda e: (e.config.priority, e.type.value))

    # -- availability ---------------------------------------------------------

    def unavailable_reason(self, provider: ProviderType, tokens: int = 0) -> str | None:
        """Why ``provider`` cannot take a call right now, or None if it can.

        Args:
            provider: Backend to check.
            tokens: Token estimate for the rate limiter's token budget.

        Returns:
            ``"not registered"``, ``"disabled"``, ``"circuit open"``,
            ``"rate limited"``, or None.
        """
        entry = self._entries.get(provider)
        if entry is None:
            return "not registered"
        if not entry.config.enabled:
            return "disabled"
        if not entry.breaker.can_execute():
            return "circuit open"
        if not entry.limiter.can_make_request(tokens):
            return "rate limited"
        return None

    def list_available(self, tokens: int = 0) -> list[ProviderEntry]:
        """Entries that are enabled, not open, and within rate limits."""
        return [e for e in self.entries() if self.unavailable_reason(e.type, tokens) is None]

    def models(self) -> list[ModelInfo]:
        """Model metadata across every registered provider."""
        return [m for e in self.entries() for m in e.models]

    def find_model(self, model_id: str) -> tuple[ProviderEntry, ModelInfo] | None:
        """Locate a model id among registered providers (priority order)."""
        for entry in self.entries():
            info = entry.model(model_id)
            if info is not None:
                return entry, info
        return None

    # -- call bookkeeping -------------------------------------------------------

    def acquire(self, provider: ProviderType, tokens: int = 0) -> ProviderEntry:
        """Reserve a call slot, rejecting locally when the provider can't take it.

        On success the caller must report exactly one of
        ``record_outcome`` or ``release``.

        Args:
            provider: Backend to call.
            tokens: Token estimate charged to the rate limiter.

        Returns:
            The provider's entry.

        Raises:
            AIError: ``CIRCUIT_OPEN`` when the breaker rejects,
                ``RATE_LIMIT_EXCEEDED`` when the limiter rejects,
                ``ROUTING_ERROR`` when unregistered or disabled.
        """
        entry = self._entries.get(provider)
        if entry is None or not entry.config.enabled:
            reason = "not registered" if entry is None else "disabled"
            raise AIError(
                f"Provider '{provider}' is {reason}",
                ErrorCode.ROUTING_ERROR,
                provider=provider,
                retryable=True,
            )
        if not entry.breaker.try_acquire():
            raise AIError(
                f"Circuit open for '{provider}'",
                ErrorCode.CIRCUIT_OPEN,
                provider=provider,
                metadata={"retry_after_s": entry.breaker.retry_after()},
            )
        if not entry.limiter.try_acquire(tokens):
            entry.breaker.release()
            wait_ms = entry.limiter.wait_time_ms(tokens)
            self._emit(AIEventType.RATE_LIMIT_HIT, provider, {"wait_ms": wait_ms, "tokens": tokens})
            raise AIError(
                f"Local rate limit reached for '{provider}'",
                ErrorCode.RATE_LIMIT_EXCEEDED,
                provider=provider,
                metadata={"wait_ms": wait_ms, "local": True},
            )
        return entry

    def release(self, provider: ProviderType) -> None:
        """Return an acquired slot without recording an outcome."""
        entry = self._entries.get(provider)
        if entry is not None:
            entry.breaker.release()

    def record_outcome(
        self,
        provider: ProviderType,
        success: bool,
        latency_ms: float,
        error: AIError | str | None = None,
    ) -> None:
        """Report the result of a call to ``provider``.

        Successes always count toward closing the circuit. Failures count
        against it only when ``error`` is a provider-health failure (or a
        plain message); other ``AIError`` codes release the slot instead.

        Args:
            provider: Backend that was called.
            success: Whether the call succeeded.
            latency_ms: Observed call latency.
            error: Failure detail, for failed calls.
        """
        entry = self._entries.get(provider)
        if entry is None:
            return
        entry.last_checked = datetime.now(UTC)
        entry.total_requests += 1
        if success:
            if entry.latency_ms is None:
                entry.latency_ms = float(latency_ms)
            else:
                entry.latency_ms = (
                    LATENCY_EWMA_ALPHA * latency_ms + (1 - LATENCY_EWMA_ALPHA) * entry.latency_ms
                )
            entry.breaker.record_success()
            return

        entry.total_failures += 1
        entry.last_error = str(error) if error is not None else "unknown error"
        if isinstance(error, AIError) and not error.is_provider_failure:
            entry.breaker.release()
            return
        entry.breaker.record_failure()

    # -- status ---------------------------------------------------------------

    def status(self, provider: ProviderType) -> ProviderStatus | None:
        """Live health snapshot for one provider."""
        entry = self._entries.get(provider)
        if entry is None:
            return None
        return ProviderStatus(
            provider=provider,
            available=self.unavailable_reason(provider) is None,
            latency_ms=entry.latency_ms,
            error_rate=entry.breaker.error_rate,
            last_error=entry.last_error,
            last_checked=entry.last_checked,
            circuit_state=entry.breaker.state,
        )

    def statuses(self) -> list[ProviderStatus]:
        return [s for e in self.entries() if (s := self.status(e.type)) is not None]

    # -- internals ------------------------------------------------------------

    def _circuit_transition(self, name: str, old: CircuitState, new: CircuitState) -> None:
        provider = ProviderType(name)
        meta = {"from": old.value, "to": new.value}
        if new == CircuitState.OPEN:
            self._emit(AIEventType.CIRCUIT_OPENED, provider, meta)
        elif new == CircuitState.CLOSED:
            self._emit(AIEventType.CIRCUIT_CLOSED, provider, meta)

    def _emit(self, event_type: AIEventType, provider: ProviderType, meta: dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, provider, meta)
        except Exception:
            logger.exception("Registry event sink failed for %s", event_type)
