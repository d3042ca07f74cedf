"""Switchboard: multi-provider LLM routing and resilience layer.

Routes chat completion requests across interchangeable model backends,
guards each backend with a circuit breaker and rate limiter, validates
input and output against a safety policy, and assembles bounded
conversational context from per-agent memory.

Typical usage::

    import asyncio
    from switchboard import AIService, CompletionRequest, Message, load_config

    async def main():
        async with AIService(load_config()) as service:
            response = await service.complete(
                CompletionRequest(messages=[Message(role="user", content="Hello")])
            )
            print(response.content)

    asyncio.run(main())
"""

from __future__ import annotations

__version__ = "0.1.0"

from switchboard.config import ServiceConfig, load_config
from switchboard.errors import AIError
from switchboard.models import (
    AgentConfig,
    CompletionRequest,
    CompletionResponse,
    ExecutionContext,
    ExecutionResult,
    Message,
)
from switchboard.service import AIService
from switchboard.types import ErrorCode, ProviderType, RoutingMode

__all__ = [
    "AIError",
    "AIService",
    "AgentConfig",
    "CompletionRequest",
    "CompletionResponse",
    "ErrorCode",
    "ExecutionContext",
    "ExecutionResult",
    "Message",
    "ProviderType",
    "RoutingMode",
    "ServiceConfig",
    "__version__",
    "load_config",
]
