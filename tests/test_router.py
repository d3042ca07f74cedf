"""Tests for the routing decision engine."""

from __future__ import annotations

import pytest

from switchboard.config import ProviderConfig, RoutingConfig, TaskRoute
from switchboard.errors import AIError
from switchboard.models import (
    CompletionRequest,
    Message,
    ModelCapabilities,
    ModelInfo,
    ToolDefinition,
)
from switchboard.providers.registry import ProviderRegistry
from switchboard.router import AIRouter
from switchboard.types import ErrorCode, ModelFeature, ProviderType, RoutingMode

from conftest import FakeProvider

GROQ = ProviderType.GROQ
ANTHROPIC = ProviderType.ANTHROPIC
OPENAI = ProviderType.OPENAI


def make_router(*providers: ProviderType, config: RoutingConfig | None = None) -> AIRouter:
    registry = ProviderRegistry()
    for ptype in providers or (GROQ, ANTHROPIC, OPENAI):
        registry.register(FakeProvider(ptype), ProviderConfig(type=ptype))
    return AIRouter(registry, config)


def ask(text: str, **kwargs) -> CompletionRequest:
    return CompletionRequest(messages=[Message(role="user", content=text)], **kwargs)


WEATHER_TOOL = ToolDefinition(name="get_weather", description="Weather for a city")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


class TestModes:
    """Each routing mode orders candidates by its own criterion."""

    def test_fast_prefers_fast_tier_default_model(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.FAST))
        decision = router.route(ask("What is the capital of France?"))
        assert decision.provider == GROQ
        assert decision.model == "llama-3.3-70b-versatile"
        assert decision.mode == RoutingMode.FAST
        assert decision.reason.startswith("Lowest estimated latency")

    def test_cost_optimized_picks_cheapest(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.COST_OPTIMIZED))
        decision = router.route(ask("What is the capital of France?"))
        assert (decision.provider, decision.model) == (GROQ, "llama-3.1-8b-instant")
        assert decision.estimated_cost_usd < 0.0001
        assert decision.reason.startswith("Lowest estimated cost")

    def test_quality_picks_most_capable(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.QUALITY))
        decision = router.route(ask("What is the capital of France?"))
        assert (decision.provider, decision.model) == (ANTHROPIC, "claude-sonnet-4-5-20250929")
        assert decision.score == 100.0

    def test_balanced_returns_one_alternative_per_other_provider(self) -> None:
        router = make_router()
        decision = router.route(ask("What is the capital of France?"))
        assert decision.mode == RoutingMode.BALANCED
        providers = [decision.provider] + [a.provider for a in decision.alternatives]
        assert sorted(providers) == sorted([GROQ, ANTHROPIC, OPENAI])
        scores = [decision.score] + [a.score for a in decision.alternatives]
        assert scores == sorted(scores, reverse=True)

    def test_balanced_penalizes_error_rate(self) -> None:
        router = make_router(GROQ, OPENAI, config=RoutingConfig(mode=RoutingMode.BALANCED))
        baseline = router.route(ask("hi there, short question"))
        registry = router._registry
        loser = registry.get(baseline.provider)
        for _ in range(3):
            loser.breaker.record_success()
        for _ in range(2):
            loser.breaker.record_failure()
        decision = router.route(ask("hi there, short question"))
        assert decision.score <= baseline.score

    def test_custom_follows_primary_then_chain(self) -> None:
        config = RoutingConfig(
            mode=RoutingMode.CUSTOM, primary_provider=OPENAI, fallback_chain=[GROQ]
        )
        decision = make_router(config=config).route(ask("Hello"))
        assert (decision.provider, decision.model) == (OPENAI, "gpt-4o")
        assert [a.provider for a in decision.alternatives] == [GROQ]
        assert decision.reason == "Primary provider: openai/gpt-4o"

    def test_custom_skips_unavailable_primary(self) -> None:
        config = RoutingConfig(
            mode=RoutingMode.CUSTOM, primary_provider=OPENAI, fallback_chain=[GROQ]
        )
        router = make_router(config=config)
        router._registry.get(OPENAI).breaker.force_open()
        decision = router.route(ask("Hello"))
        assert decision.provider == GROQ
        assert decision.reason.startswith("Primary provider openai unavailable (circuit open)")
        assert [s.provider for s in decision.skipped] == [OPENAI]



    def test_custom_chain_head_skipped_without_primary(self) -> None:
        config = RoutingConfig(mode=RoutingMode.CUSTOM, fallback_chain=[OPENAI, GROQ])
        router = make_router(config=config)
        router._registry.get(OPENAI).breaker.force_open()
        decision = router.route(ask("Hello"))
        assert router.preferred_provider() == OPENAI
        assert decision.provider == GROQ
        assert decision.reason.startswith("Primary provider openai unavailable")

    def test_score_modes_name_no_preferred_provider(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.FAST))
        assert router.preferred_provider() is None
        balanced = RoutingConfig(primary_provider=ANTHROPIC)
        assert router.preferred_provider(balanced) == ANTHROPIC


def single_model(provider: ProviderType, latency_ms: float) -> ModelInfo:
    return ModelInfo(
        id=f"{provider.value}-only",
        provider=provider,
        name="Only",
        context_window=32_000,
        max_output_tokens=4_000,
        input_cost_per_1k=0.001,
        output_cost_per_1k=0.002,
        capabilities=ModelCapabilities(speed="medium"),
        latency_ms=latency_ms,
    )


class TestFastModeLatency:
    def test_lower_measured_latency_wins(self) -> None:
        registry = ProviderRegistry()
        for ptype, latency in ((GROQ, 800.0), (OPENAI, 200.0)):
            registry.register(
                FakeProvider(ptype), ProviderConfig(type=ptype), [single_model(ptype, latency)]
            )
        router = AIRouter(registry, RoutingConfig(mode=RoutingMode.FAST))
        decision = router.route(ask("What is the capital of France?", max_tokens=1))
        assert (decision.provider, decision.model) == (OPENAI, "openai-only")
        assert decision.alternatives[0].provider == GROQ
        assert decision.estimated_latency_ms == 210.0

# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestFilters:
    """Feature requirements, exclusions, and soft limits."""

    def test_tools_require_tool_use(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.COST_OPTIMIZED))
        decision = router.route(ask("Weather in Paris?", tools=[WEATHER_TOOL]))
        assert (decision.provider, decision.model) == (GROQ, "mixtral-8x7b-32768")
        chosen = [(decision.provider, decision.model)] + [
            (a.provider, a.model) for a in decision.alternatives
        ]
        assert (GROQ, "llama-3.1-8b-instant") not in chosen

    def test_vision_cue_prefers_vision_models(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.FAST))
        decision = router.route(ask("Describe this image of a cat"))
        assert decision.provider != GROQ

    def test_vision_cue_ignored_when_nothing_qualifies(self) -> None:
        router = make_router(GROQ, config=RoutingConfig(mode=RoutingMode.FAST))
        decision = router.route(ask("Describe this image of a cat"))
        assert decision.provider == GROQ

    def test_required_feature_is_hard(self) -> None:
        config = RoutingConfig(require_features=[ModelFeature.VISION])
        with pytest.raises(AIError) as exc_info:
            make_router(GROQ, config=config).route(ask("Hello"))
        assert exc_info.value.code == ErrorCode.NO_AVAILABLE_PROVIDERS

    def test_exclude_provider_and_model(self) -> None:
        config = RoutingConfig(
            mode=RoutingMode.COST_OPTIMIZED, exclude_models=["anthropic", "llama-3.1-8b-instant"]
        )
        decision = make_router(config=config).route(ask("Hello"))
        everything = [decision.provider] + [a.provider for a in decision.alternatives]
        assert ANTHROPIC not in everything
        assert decision.model != "llama-3.1-8b-instant"

    def test_preferred_models_restrict_candidates(self) -> None:
        config = RoutingConfig(preferred_models=["gpt-4o-mini"])
        decision = make_router(config=config).route(ask("Hello"))
        assert (decision.provider, decision.model) == (OPENAI, "gpt-4o-mini")
        assert decision.alternatives == ()

    def test_soft_cost_limit_ignored_when_unmeetable(self) -> None:
        config = RoutingConfig(mode=RoutingMode.QUALITY, max_cost_per_request=1e-12)
        decision = make_router(config=config).route(ask("Hello"))
        assert decision.provider == ANTHROPIC

    def test_soft_latency_limit_applies(self) -> None:
        config = RoutingConfig(mode=RoutingMode.QUALITY, max_latency_ms=1500)
        decision = make_router(config=config).route(ask("Hello"))
        assert decision.estimated_latency_ms <= 1500

    def test_max_alternatives(self) -> None:
        config = RoutingConfig(max_alternatives=1)
        decision = make_router(config=config).route(ask("Hello"))
        assert len(decision.alternatives) == 1

    def test_no_candidates_raises_with_skipped(self) -> None:
        router = make_router(GROQ)
        router._registry.get(GROQ).breaker.force_open()
        with pytest.raises(AIError) as exc_info:
            router.route(ask("Hello"))
        assert exc_info.value.code == ErrorCode.NO_AVAILABLE_PROVIDERS
        assert exc_info.value.metadata["skipped"] == [
            {"provider": "groq", "reason": "circuit open"}
        ]


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


class TestOverrides:
    """Pinned models, task routes, and per-request configs."""

    def test_pinned_model_wins(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.COST_OPTIMIZED))
        decision = router.route(ask("Hello", model="gpt-4o"))
        assert (decision.provider, decision.model) == (OPENAI, "gpt-4o")
        assert decision.reason == "User specified model"
        assert OPENAI not in [a.provider for a in decision.alternatives]

    def test_unknown_pinned_model_routes_normally(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.COST_OPTIMIZED))
        decision = router.route(ask("Hello", model="not-a-model"))
        assert decision.model == "llama-3.1-8b-instant"

    def test_task_route(self) -> None:
        config = RoutingConfig(
            mode=RoutingMode.FAST,
            task_type_routing={"code_generation": TaskRoute(provider=ANTHROPIC)},
        )
        decision = make_router(config=config).route(
            ask("Write a Python function that parses CSV files")
        )
        assert decision.provider == ANTHROPIC
        assert decision.reason == "Task route for code_generation"

    def test_task_route_with_model(self) -> None:
        config = RoutingConfig(
            task_type_routing={
                "code_generation": TaskRoute(provider=OPENAI, model="o3-mini", fallback=[GROQ])
            },
        )
        decision = make_router(config=config).route(ask("Write a sorting function in Rust"))
        assert (decision.provider, decision.model) == (OPENAI, "o3-mini")
        assert decision.alternatives[0].provider == GROQ

    def test_per_request_config_overrides_default(self) -> None:
        router = make_router(config=RoutingConfig(mode=RoutingMode.QUALITY))
        decision = router.route(ask("Hello"), RoutingConfig(mode=RoutingMode.COST_OPTIMIZED))
        assert decision.mode == RoutingMode.COST_OPTIMIZED

    def test_decision_serializes(self) -> None:
        decision = make_router().route(ask("Hello"))
        data = decision.to_dict()
        assert data["provider"] == decision.provider.value
        assert data["mode"] == "balanced"
        assert len(data["alternatives"]) == len(decision.alternatives)
        assert decision.candidates()[0] == (decision.provider, decision.model)
