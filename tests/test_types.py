"""Tests for core routing types.

Covers: ProviderType values and alignment with config keys, enum string
behavior, severity ordering, and RoutingDecision immutability and
serialization.
"""

from __future__ import annotations

import dataclasses
import json

import pytest

from switchboard.config import _PROVIDER_ENV_MAP
from switchboard.types import (
    CircuitState,
    ErrorCode,
    ProviderType,
    RoutingAlternative,
    RoutingDecision,
    RoutingMode,
    Severity,
    SkippedProvider,
)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TestProviderType:
    """ProviderType values double as config keys."""

    def test_all_seven_members(self) -> None:
        assert len(ProviderType) == 7

    def test_expected_values(self) -> None:
        assert [p.value for p in ProviderType] == [
            "groq",
            "anthropic",
            "openai",
            "google",
            "xai",
            "openrouter",
            "local",
        ]

    def test_equality_with_string(self) -> None:
        assert ProviderType.ANTHROPIC == "anthropic"
        assert f"{ProviderType.GROQ}" == "groq"

    def test_every_keyed_provider_has_env_var(self) -> None:
        """All providers except local authenticate with an env var key."""
        keyed = {p for p in ProviderType if p != ProviderType.LOCAL}
        assert set(_PROVIDER_ENV_MAP) == keyed


class TestOtherEnums:
    def test_circuit_state_values(self) -> None:
        assert CircuitState.HALF_OPEN == "half-open"

    def test_severity_rank_is_ordered(self) -> None:
        ranks = [s.rank for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == [0, 1, 2, 3]

    def test_error_codes_are_their_names(self) -> None:
        assert all(code.value == code.name for code in ErrorCode)

    def test_routing_mode_from_string(self) -> None:
        assert RoutingMode("cost_optimized") is RoutingMode.COST_OPTIMIZED


# ---------------------------------------------------------------------------
# RoutingDecision
# ---------------------------------------------------------------------------


def sample_decision() -> RoutingDecision:
    return RoutingDecision(
        provider=ProviderType.GROQ,
        model="llama-3.3-70b-versatile",
        reason="Lowest estimated latency",
        mode=RoutingMode.FAST,
        score=97.5,
        alternatives=(RoutingAlternative(ProviderType.OPENAI, "gpt-4o-mini", 80.0),),
        estimated_latency_ms=1224.0,
        estimated_cost_usd=0.0004,
        skipped=(SkippedProvider(ProviderType.ANTHROPIC, "circuit open"),),
    )


class TestRoutingDecision:
    """Immutable routing record."""

    def test_frozen(self) -> None:
        decision = sample_decision()
        with pytest.raises(dataclasses.FrozenInstanceError):
            decision.provider = ProviderType.OPENAI  # type: ignore[misc]

    def test_candidates_in_attempt_order(self) -> None:
        assert sample_decision().candidates() == [
            (ProviderType.GROQ, "llama-3.3-70b-versatile"),
            (ProviderType.OPENAI, "gpt-4o-mini"),
        ]

    def test_to_dict_is_json_serializable(self) -> None:
        data = sample_decision().to_dict()
        assert json.loads(json.dumps(data)) == data
        assert data["mode"] == "fast"
        assert data["alternatives"] == [
            {"provider": "openai", "model": "gpt-4o-mini", "score": 80.0}
        ]
        assert data["skipped"] == [{"provider": "anthropic", "reason": "circuit open"}]

    def test_defaults(self) -> None:
        decision = RoutingDecision(
            provider=ProviderType.LOCAL, model="llama3.2", reason="only", mode=RoutingMode.CUSTOM
        )
        assert decision.alternatives == ()
        assert decision.skipped == ()
        assert decision.candidates() == [(ProviderType.LOCAL, "llama3.2")]
