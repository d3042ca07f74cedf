"""Static model catalog.

Capability, context, and pricing metadata for the models each backend
serves. The router ranks candidates from this table alone; nothing here
touches the network. Prices are USD per 1,000 tokens and were current
when the table was last reviewed. Override or extend per registry entry
by passing ``models=`` to ``ProviderRegistry.register``.
"""

from __future__ import annotations

from switchboard.models import ModelCapabilities, ModelInfo
from switchboard.types import ModelFeature, ProviderType

_F = ModelFeature

_CHAT = frozenset({_F.CHAT, _F.STREAMING, _F.JSON_MODE})
_TOOLS = _CHAT | {_F.TOOL_USE}
_FULL = _TOOLS | {_F.VISION, _F.CODE, _F.REASONING}


def _m(
    provider: ProviderType,
    model_id: str,
    name: str,
    context_window: int,
    max_output: int,
    cost_in: float,
    cost_out: float,
    features: frozenset[ModelFeature],
    speed: str,
    reasoning: str,
    coding: str,
    cost_tier: str,
    *,
    recommended: bool = False,
) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        provider=provider,
        name=name,
        context_window=context_window,
        max_output_tokens=max_output,
        input_cost_per_1k=cost_in,
        output_cost_per_1k=cost_out,
        features=features,
        capabilities=ModelCapabilities(
            speed=speed, reasoning=reasoning, coding=coding, cost_tier=cost_tier
        ),
        recommended=recommended,
    )


_G = ProviderType.GROQ
_A = ProviderType.ANTHROPIC
_O = ProviderType.OPENAI
_GO = ProviderType.GOOGLE
_X = ProviderType.XAI
_OR = ProviderType.OPENROUTER
_L = ProviderType.LOCAL

MODEL_CATALOG: dict[ProviderType, list[ModelInfo]] = {
    _G: [
        _m(_G, "llama-3.3-70b-versatile", "Llama 3.3 70B", 128_000, 32_768, 0.00059, 0.00079,
           _TOOLS | {_F.CODE}, "fast", "advanced", "advanced", "low", recommended=True),
        _m(_G, "llama-3.1-8b-instant", "Llama 3.1 8B Instant", 128_000, 8_192, 0.00005, 0.00008,
           _CHAT, "fast", "basic", "basic", "free"),
        _m(_G, "mixtral-8x7b-32768", "Mixtral 8x7B", 32_768, 32_768, 0.00024, 0.00024,
           _TOOLS, "fast", "standard", "standard", "low"),
    ],
    _A: [
        _m(_A, "claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", 200_000, 64_000, 0.003, 0.015,
           _FULL, "medium", "expert", "expert", "high", recommended=True),
        _m(_A, "claude-haiku-4-5-20251001", "Claude Haiku 4.5", 200_000, 64_000, 0.001, 0.005,
           _FULL, "fast", "advanced", "advanced", "medium"),
        _m(_A, "claude-opus-4-1-20250805", "Claude Opus 4.1", 200_000, 32_000, 0.015, 0.075,
           _FULL, "slow", "expert", "expert", "premium"),
    ],
    _O: [
        _m(_O, "gpt-4o", "GPT-4o", 128_000, 16_384, 0.0025, 0.01,
           _FULL, "medium", "advanced", "advanced", "high", recommended=True),
        _m(_O, "gpt-4o-mini", "GPT-4o mini", 128_000, 16_384, 0.00015, 0.0006,
           _TOOLS | {_F.VISION, _F.CODE}, "fast", "standard", "standard", "low"),
        _m(_O, "o3-mini", "o3-mini", 200_000, 100_000, 0.0011, 0.0044,
           _TOOLS | {_F.CODE, _F.REASONING}, "slow", "expert", "expert", "medium"),
    ],
    _GO: [
        _m(_GO, "gemini-2.5-pro", "Gemini 2.5 Pro", 1_048_576, 65_536, 0.00125, 0.01,
           _FULL, "medium", "expert", "advanced", "high", recommended=True),
        _m(_GO, "gemini-2.5-flash", "Gemini 2.5 Flash", 1_048_576, 65_536, 0.0003, 0.0025,
           _FULL, "fast", "advanced", "standard", "low"),
    ],
    _X: [
        _m(_X, "grok-4", "Grok 4", 256_000, 32_768, 0.003, 0.015,
           _FULL, "slow", "expert", "advanced", "high", recommended=True),
        _m(_X, "grok-3-mini", "Grok 3 mini", 131_072, 16_384, 0.0003, 0.0005,
           _TOOLS | {_F.REASONING}, "fast", "advanced", "standard", "low"),
    ],
    _OR: [
        _m(_OR, "anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5 (OpenRouter)", 200_000, 64_000,
           0.003, 0.015, _FULL, "medium", "expert", "expert", "high", recommended=True),
        _m(_OR, "openai/gpt-4o-mini", "GPT-4o mini (OpenRouter)", 128_000, 16_384,
           0.00015, 0.0006, _TOOLS | {_F.VISION, _F.CODE}, "fast", "standard", "standard", "low"),
        _m(_OR, "meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B (OpenRouter)", 128_000,
           16_384, 0.00012, 0.0003, _TOOLS, "medium", "advanced", "advanced", "low"),
    ],
    _L: [
        _m(_L, "llama3.2", "Llama 3.2 (local)", 128_000, 4_096, 0.0, 0.0,
           _CHAT, "medium", "standard", "standard", "free", recommended=True),
    ],
}

DEFAULT_MODELS: dict[ProviderType, str] = {
    ptype: next(m.id for m in models if m.recommended) for ptype, models in MODEL_CATALOG.items()
}


def catalog_for(provider: ProviderType) -> list[ModelInfo]:
    """Return a copy of the static catalog for one provider."""
    return list(MODEL_CATALOG.get(provider, []))


def find_model(model_id: str) -> ModelInfo | None:
    """Look a model up by id across every provider's catalog."""
    for models in MODEL_CATALOG.values():
        for model in models:
            if model.id == model_id:
                return model
    return None
