"""Tests for event delivery and metrics aggregation."""

from __future__ import annotations

import logging

import pytest

from switchboard.events import EventEmitter, MetricsCollector, percentile
from switchboard.models import AIEvent, UsageInfo
from switchboard.types import AIEventType, CircuitState, ProviderType

GROQ = ProviderType.GROQ


def completed(latency: float, provider: ProviderType = GROQ, cost: float = 0.001) -> AIEvent:
    return AIEvent(
        type=AIEventType.REQUEST_COMPLETED,
        provider=provider,
        latency_ms=latency,
        usage=UsageInfo(10, 5, 15, cost),
        success=True,
    )


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class TestEventEmitter:
    """Delivery to sinks and the metrics collector."""

    def test_delivers_once(self) -> None:
        seen: list[AIEvent] = []
        emitter = EventEmitter(seen.append)
        event = AIEvent(type=AIEventType.REQUEST_STARTED)
        emitter.emit(event)
        assert seen == [event]

    def test_disabled_emits_nothing(self) -> None:
        seen: list[AIEvent] = []
        metrics = MetricsCollector()
        emitter = EventEmitter(seen.append, enabled=False, metrics=metrics)
        emitter.emit(AIEvent(type=AIEventType.REQUEST_STARTED))
        assert seen == []
        assert metrics.snapshot().total_requests == 0

    def test_failing_sink_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        def sink(_event: AIEvent) -> None:
            raise RuntimeError("sink down")

        metrics = MetricsCollector()
        emitter = EventEmitter(sink, metrics=metrics)
        with caplog.at_level(logging.ERROR, logger="switchboard.events"):
            emitter.emit(AIEvent(type=AIEventType.REQUEST_STARTED))
        assert "Event sink failed" in caplog.text
        assert metrics.snapshot().total_requests == 1

    def test_no_sink_still_records_metrics(self) -> None:
        metrics = MetricsCollector()
        EventEmitter(metrics=metrics).emit(AIEvent(type=AIEventType.REQUEST_STARTED))
        assert metrics.snapshot().total_requests == 1

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited_by_drain(self) -> None:
        seen: list[AIEventType] = []

        async def sink(event: AIEvent) -> None:
            seen.append(event.type)

        emitter = EventEmitter(sink)
        emitter.emit(AIEvent(type=AIEventType.REQUEST_STARTED))
        emitter.emit(AIEvent(type=AIEventType.REQUEST_COMPLETED))
        await emitter.drain()
        assert seen == [AIEventType.REQUEST_STARTED, AIEventType.REQUEST_COMPLETED]

    @pytest.mark.asyncio
    async def test_async_sink_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        async def sink(_event: AIEvent) -> None:
            raise RuntimeError("async sink down")

        emitter = EventEmitter(sink)
        with caplog.at_level(logging.ERROR, logger="switchboard.events"):
            emitter.emit(AIEvent(type=AIEventType.REQUEST_STARTED))
            await emitter.drain()
        assert "Async event sink failed" in caplog.text


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetricsCollector:
    """Folding events into AIMetrics."""

    def test_request_totals(self) -> None:
        metrics = MetricsCollector()
        for _ in range(3):
            metrics.record(AIEvent(type=AIEventType.REQUEST_STARTED))
        metrics.record(completed(100))
        metrics.record(completed(300))
        metrics.record(AIEvent(type=AIEventType.REQUEST_FAILED, provider=GROQ, success=False))

        snap = metrics.snapshot()
        assert snap.total_requests == 3
        assert snap.successful_requests == 2
        assert snap.failed_requests == 1
        assert snap.success_rate == pytest.approx(2 / 3)
        assert snap.total_tokens == 30
        assert snap.total_cost_usd == pytest.approx(0.002)
        assert snap.avg_latency_ms == 200.0

        groq = snap.providers[GROQ]
        assert (groq.requests, groq.successes, groq.failures) == (3, 2, 1)
        assert groq.avg_latency_ms == 200.0

    def test_counters(self) -> None:
        metrics = MetricsCollector()
        for kind in (
            AIEventType.PROVIDER_FALLBACK,
            AIEventType.RATE_LIMIT_HIT,
            AIEventType.SAFETY_VIOLATION,
            AIEventType.TOOL_EXECUTED,
            AIEventType.TOOL_EXECUTED,
        ):
            metrics.record(AIEvent(type=kind))
        snap = metrics.snapshot()
        assert (snap.fallbacks, snap.rate_limit_hits, snap.safety_violations) == (1, 1, 1)
        assert snap.tool_calls == 2

    def test_percentiles(self) -> None:
        metrics = MetricsCollector()
        for latency in range(1, 101):
            metrics.record(completed(float(latency)))
        snap = metrics.snapshot()
        assert snap.p50_latency_ms == 50.0
        assert snap.p95_latency_ms == 95.0
        assert snap.p99_latency_ms == 99.0

    def test_circuit_transitions_and_live_states(self) -> None:
        metrics = MetricsCollector()
        metrics.record(AIEvent(type=AIEventType.CIRCUIT_OPENED, provider=GROQ))
        assert metrics.snapshot().providers[GROQ].circuit_state == CircuitState.OPEN
        live = metrics.snapshot(
            {GROQ: CircuitState.HALF_OPEN, ProviderType.OPENAI: CircuitState.CLOSED}
        )
        assert live.providers[GROQ].circuit_state == CircuitState.HALF_OPEN
        assert ProviderType.OPENAI in live.providers

    def test_snapshot_is_a_copy(self) -> None:
        metrics = MetricsCollector()
        metrics.record(completed(10))
        snap = metrics.snapshot()
        snap.providers[GROQ].successes = 99
        assert metrics.snapshot().providers[GROQ].successes == 1

    def test_reset(self) -> None:
        metrics = MetricsCollector()
        metrics.record(completed(10))
        metrics.reset()
        snap = metrics.snapshot()
        assert snap.successful_requests == 0
        assert snap.providers == {}

    def test_to_dict(self) -> None:
        metrics = MetricsCollector()
        metrics.record(AIEvent(type=AIEventType.REQUEST_STARTED))
        metrics.record(completed(42))
        data = metrics.snapshot().to_dict()
        assert data["success_rate"] == 1.0
        assert data["providers"]["groq"]["avg_latency_ms"] == 42.0


class TestPercentile:
    def test_nearest_rank(self) -> None:
        assert percentile([], 50) == 0.0
        assert percentile([5.0], 99) == 5.0
        assert percentile([1.0, 2.0, 3.0, 4.0], 50) == 2.0
        assert percentile([1.0, 2.0, 3.0, 4.0], 0) == 1.0
