"""Event delivery and aggregate metrics.

``EventEmitter`` hands each ``AIEvent`` to the caller's sink exactly once
and, when metrics are enabled, to a ``MetricsCollector``. A failing sink
is logged and never aborts the request that produced the event.

Typical usage::

    emitter = EventEmitter(print, metrics=MetricsCollector())
    emitter.emit(AIEvent(type=AIEventType.REQUEST_STARTED, request_id="req-1"))
    emitter.metrics.snapshot().total_requests
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from switchboard.config import EventCallback
from switchboard.models import AIEvent
from switchboard.types import AIEventType, CircuitState, ProviderType

logger = logging.getLogger(__name__)

LATENCY_SAMPLES = 1000


@dataclass
class ProviderMetrics:
    """Per-provider request totals."""

    provider: ProviderType
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.successes if self.successes else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "provider": self.provider.value,
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "circuit_state": self.circuit_state.value,
        }


@dataclass
class AIMetrics:
    """Point-in-time aggregate of everything the service has emitted.

    Attributes:
        total_requests: Requests started.
        successful_requests: Requests completed.
        failed_requests: Requests that ended in an error.
        total_tokens: Tokens across completed requests.
        total_cost_usd: Estimated spend across completed requests.
        avg_latency_ms: Mean latency of completed requests.
        p50_latency_ms: Median latency.
        p95_latency_ms: 95th percentile latency.
        p99_latency_ms: 99th percentile latency.
        fallbacks: Provider switches.
        rate_limit_hits: Local rate-limit rejections.
        safety_violations: Requests or outputs blocked by safety.
        tool_calls: Tools executed.
        providers: Per-provider totals.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    fallbacks: int = 0
    rate_limit_hits: int = 0
    safety_violations: int = 0
    tool_calls: int = 0
    providers: dict[ProviderType, ProviderMetrics] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        finished = self.successful_requests + self.failed_requests
        return self.successful_requests / finished if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 4),
            "total_tokens": self.total_tokens,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "p50_latency_ms": self.p50_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "p99_latency_ms": self.p99_latency_ms,
            "fallbacks": self.fallbacks,
            "rate_limit_hits": self.rate_limit_hits,
            "safety_violations": self.safety_violations,
            "tool_calls": self.tool_calls,
            "providers": {p.value: m.to_dict() for p, m in self.providers.items()},
        }


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0 when empty."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class MetricsCollector:
    """Fold events into running totals.

    Args:
        max_samples: Latencies kept for percentile estimates.
    """

    def __init__(self, max_samples: int = LATENCY_SAMPLES) -> None:
        self._max_samples = max_samples
        self.reset()

    def reset(self) -> None:
        self._metrics = AIMetrics()
        self._latencies: deque[float] = deque(maxlen=self._max_samples)
        self._latency_total = 0.0

    def _provider(self, provider: ProviderType) -> ProviderMetrics:
        metrics = self._metrics.providers.get(provider)
        if metrics is None:
            metrics = self._metrics.providers[provider] = ProviderMetrics(provider)
        return metrics

    def record(self, event: AIEvent) -> None:
        """Update totals from one event."""
        m = self._metrics
        kind = event.type
        if kind == AIEventType.REQUEST_STARTED:
            m.total_requests += 1
        elif kind == AIEventType.REQUEST_COMPLETED:
            m.successful_requests += 1
            if event.usage is not None:
                m.total_tokens += event.usage.total_tokens
                m.total_cost_usd += event.usage.estimated_cost_usd or 0.0
            if event.latency_ms is not None:
                self._latencies.append(event.latency_ms)
                self._latency_total += event.latency_ms
            if event.provider is not None:
                pm = self._provider(event.provider)
                pm.requests += 1
                pm.successes += 1
                pm.total_latency_ms += event.latency_ms or 0.0
        elif kind == AIEventType.REQUEST_FAILED:
            m.failed_requests += 1
            if event.provider is not None:
                pm = self._provider(event.provider)
                pm.requests += 1
                pm.failures += 1
        elif kind == AIEventType.PROVIDER_FALLBACK:
            m.fallbacks += 1
        elif kind == AIEventType.RATE_LIMIT_HIT:
            m.rate_limit_hits += 1
        elif kind == AIEventType.SAFETY_VIOLATION:
            m.safety_violations += 1
        elif kind == AIEventType.TOOL_EXECUTED:
            m.tool_calls += 1
        elif kind == AIEventType.CIRCUIT_OPENED and event.provider is not None:
            self._provider(event.provider).circuit_state = CircuitState.OPEN
        elif kind == AIEventType.CIRCUIT_CLOSED and event.provider is not None:
            self._provider(event.provider).circuit_state = CircuitState.CLOSED

    def snapshot(
        self, circuit_states: dict[ProviderType, CircuitState] | None = None
    ) -> AIMetrics:
        """Return a copy of the current totals.

        Args:
            circuit_states: Live breaker states to report instead of the
                last transition seen in events.

        Returns:
            AIMetrics with latency statistics computed now.
        """
        m = self._metrics
        ordered = sorted(self._latencies)
        providers = {
            p: ProviderMetrics(
                provider=p,
                requests=pm.requests,
                successes=pm.successes,
                failures=pm.failures,
                total_latency_ms=pm.total_latency_ms,
                circuit_state=pm.circuit_state,
            )
            for p, pm in m.providers.items()
        }
        for provider, state in (circuit_states or {}).items():
            providers.setdefault(provider, ProviderMetrics(provider)).circuit_state = state
        return AIMetrics(
            total_requests=m.total_requests,
            successful_requests=m.successful_requests,
            failed_requests=m.failed_requests,
            total_tokens=m.total_tokens,
            total_cost_usd=m.total_cost_usd,
            avg_latency_ms=(self._latency_total / m.successful_requests)
            if m.successful_requests
            else 0.0,
            p50_latency_ms=percentile(ordered, 50),
            p95_latency_ms=percentile(ordered, 95),
            p99_latency_ms=percentile(ordered, 99),
            fallbacks=m.fallbacks,
            rate_limit_hits=m.rate_limit_hits,
            safety_violations=m.safety_violations,
            tool_calls=m.tool_calls,
            providers=providers,
        )


class EventEmitter:
    """Deliver events to a sink and a metrics collector.

    The sink may be a plain function or a coroutine function. Coroutine
    results are scheduled on the running loop; their failures are logged.

    Args:
        sink: Caller-supplied event callback.
        enabled: When False, ``emit`` does nothing.
        metrics: Collector fed with every emitted event.
    """

    def __init__(
        self,
        sink: EventCallback | None = None,
        *,
        enabled: bool = True,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.sink = sink
        self.enabled = enabled
        self.metrics = metrics
        self._pending: set[asyncio.Task[Any]] = set()

    def emit(self, event: AIEvent) -> None:
        """Deliver ``event`` once. Sink failures are logged, never raised."""
        if not self.enabled:
            return
        if self.metrics is not None:
            self.metrics.record(event)
        if self.sink is None:
            return
        try:
            result = self.sink(event)
        except Exception:
            logger.exception("Event sink failed for %s", event.type)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._task_done)

    async def drain(self) -> None:
        """Wait for scheduled async sink calls to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event sink failed: %s", exc, exc_info=exc)
