"""Token, cost, and latency estimation from static model metadata.

Routing never calls a provider, so every estimate here is computed from
the model catalog and the request's text. Token counts use a character
heuristic (four characters per token plus a small per-message overhead),
which is close enough to rank candidates and enforce context budgets.

Typical usage::

    from switchboard.pricing import estimate_request_tokens, estimate_cost

    prompt_tokens = estimate_request_tokens(request)
    cost = estimate_cost(model, prompt_tokens, output_tokens=512)
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from switchboard.models import CompletionRequest, Message, ModelInfo, UsageInfo

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
DEFAULT_OUTPUT_TOKENS = 512

# Base latency (time to first token) per speed tier, in ms.
SPEED_BASE_LATENCY_MS: dict[str, float] = {"fast": 200.0, "medium": 800.0, "slow": 2000.0}

# Generation cost per output token per speed tier, in ms.
SPEED_MS_PER_TOKEN: dict[str, float] = {"fast": 2.0, "medium": 10.0, "slow": 25.0}


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text.

    Args:
        text: Any text.

    Returns:
        ``ceil(len(text) / 4)``; zero for empty text.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for one message including role overhead."""
    tokens = estimate_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS
    for call in message.tool_calls:
        tokens += estimate_tokens(call.name) + estimate_tokens(str(call.arguments))
    return tokens


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    """Estimate tokens for a message list."""
    return sum(estimate_message_tokens(m) for m in messages)


def estimate_request_tokens(request: CompletionRequest) -> int:
    """Estimate prompt tokens for a request, including tool schemas."""
    tokens = estimate_messages_tokens(request.messages)
    for tool in request.tools:
        tokens += estimate_tokens(tool.name) + estimate_tokens(tool.description)
        tokens += estimate_tokens(str(tool.parameters))
    return tokens


def expected_output_tokens(request: CompletionRequest) -> int:
    """Output tokens assumed for estimates: ``max_tokens`` or a default."""
    return request.max_tokens or DEFAULT_OUTPUT_TOKENS


def estimate_cost(model: ModelInfo, prompt_tokens: int, output_tokens: int) -> float:
    """Estimate the USD cost of a call.

    Args:
        model: Model metadata with per-1k pricing.
        prompt_tokens: Input token estimate.
        output_tokens: Output token estimate.

    Returns:
        Cost in USD.
    """
    return (
        prompt_tokens / 1000 * model.input_cost_per_1k
        + output_tokens / 1000 * model.output_cost_per_1k
    )


def estimate_latency(model: ModelInfo, output_tokens: int) -> float:
    """Estimate wall time of a call in milliseconds.

    Uses the model's typical latency when the catalog provides one,
    otherwise the base latency of its speed tier, plus per-token
    generation time for the tier.

    Args:
        model: Model metadata.
        output_tokens: Output token estimate.

    Returns:
        Latency estimate in ms.
    """
    speed = model.capabilities.speed
    base = model.latency_ms
    if base is None:
        base = SPEED_BASE_LATENCY_MS.get(speed, SPEED_BASE_LATENCY_MS["medium"])
    per_token = SPEED_MS_PER_TOKEN.get(speed, SPEED_MS_PER_TOKEN["medium"])
    return base + output_tokens * per_token


def compute_usage_cost(usage: UsageInfo, model: ModelInfo | None) -> float | None:
    """Compute USD cost for reported token usage.

    Args:
        usage: Usage reported by the provider.
        model: Catalog entry for the model, or None if unknown.

    Returns:
        Cost in USD, or None if the model has no catalog entry.
    """
    if model is None:
        return None
    return estimate_cost(model, usage.prompt_tokens, usage.completion_tokens)
