"""Abstract base class for model API providers.

Defines the ``Provider`` interface that every wire-format adapter follows.
Adapters handle auth, endpoints, request formatting, and response
normalization; all of them return ``CompletionResponse`` objects and
raise ``AIError`` with a taxonomy code on failure.

Subclasses must implement ``complete()``, ``stream_chunks()``,
``__aenter__()``, and ``__aexit__()``. The default ``stream()`` drives
``stream_chunks()`` into a caller-supplied sink and aggregates the
chunks into a final response.
"""

from __future__ import annotations

import inspect
import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from switchboard.errors import AIError
from switchboard.models import (
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    Message,
    ModelInfo,
    StreamChunk,
    ToolCall,
    UsageInfo,
)
from switchboard.pricing import compute_usage_cost
from switchboard.providers.catalog import catalog_for
from switchboard.types import ErrorCode, ProviderType

DEFAULT_TIMEOUT = 60.0  # seconds

ChunkSink = Callable[[StreamChunk], Any]

# Phrases backends use when a prompt exceeds the model's context window.
_CONTEXT_MARKERS = (
    "context length",
    "context_length",
    "context window",
    "maximum context",
    "too many tokens",
    "prompt is too long",
    "token limit",
)


class Provider(ABC):
    """Base class for all model API providers.

    Designed as an async context manager for connection lifecycle.

    Attributes:
        provider_type: Backend this adapter talks to.
    """

    provider_type: ProviderType

    _client: httpx.AsyncClient | None = None

    @abstractmethod
    async def complete(self, request: CompletionRequest, model: str) -> CompletionResponse:
        """Send a completion request.

        Args:
            request: The request; messages are forwarded in order.
            model: Provider-specific model identifier.

        Returns:
            Normalized response with usage and latency.

        Raises:
            AIError: With a taxonomy code describing the failure.
            RuntimeError: If used outside its context manager.
        """
        ...

    @abstractmethod
    def stream_chunks(self, request: CompletionRequest, model: str) -> AsyncIterator[StreamChunk]:
        """Yield incremental chunks of a completion.

        Args:
            request: The request; messages are forwarded in order.
            model: Provider-specific model identifier.

        Yields:
            StreamChunk objects in arrival order.

        Raises:
            AIError: With a taxonomy code describing the failure.
        """
        ...

    async def stream(
        self,
        request: CompletionRequest,
        model: str,
        on_chunk: ChunkSink,
    ) -> CompletionResponse:
        """Stream a completion into ``on_chunk`` and return the aggregate.

        ``on_chunk`` may be a plain function or a coroutine function.

        Args:
            request: The request.
            model: Provider-specific model identifier.
            on_chunk: Sink called once per chunk, in order.

        Returns:
            CompletionResponse with the concatenated content.
        """
        start = time.monotonic()
        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage: UsageInfo | None = None
        finish_reason: FinishReason = "stop"
        response_id = ""
        async for chunk in self.stream_chunks(request, model):
            response_id = response_id or chunk.id
            parts.append(chunk.delta)
            tool_calls.extend(chunk.tool_calls)
            if chunk.usage is not None:
                usage = chunk.usage
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason
            result = on_chunk(chunk)
            if inspect.isawaitable(result):
                await result

        content = "".join(parts)
        return self._build_response(
            response_id=response_id,
            model=model,
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage or UsageInfo(),
            start=start,
        )

    @property
    def models(self) -> list[ModelInfo]:
        """Static catalog of models this adapter serves."""
        return catalog_for(self.provider_type)

    async def list_models(self) -> list[ModelInfo]:
        """Return the static model catalog. Never touches the network."""
        return self.models

    def model_info(self, model_id: str) -> ModelInfo | None:
        """Look up catalog metadata for one of this adapter's models."""
        return next((m for m in self.models if m.id == model_id), None)

    # -- helpers shared by adapters ------------------------------------------

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    def _build_response(
        self,
        *,
        response_id: str,
        model: str,
        content: str,
        tool_calls: list[ToolCall],
        finish_reason: FinishReason,
        usage: UsageInfo,
        start: float,
    ) -> CompletionResponse:
        """Assemble a CompletionResponse and price its usage."""
        if usage.total_tokens == 0:
            usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
        usage.estimated_cost_usd = compute_usage_cost(usage, self.model_info(model))
        message = Message(role="assistant", content=content, tool_calls=tool_calls)
        return CompletionResponse(
            id=response_id or f"{self.provider_type.value}-{int(start * 1000)}",
            provider=self.provider_type,
            model=model,
            choices=[CompletionChoice(index=0, message=message, finish_reason=finish_reason)],
            usage=usage,
            latency_ms=_elapsed_ms(start),
            finish_reason=finish_reason,
        )

    def _timeout_error(self, timeout: float) -> AIError:
        return AIError(
            f"Request timed out after {timeout}s",
            ErrorCode.TIMEOUT,
            provider=self.provider_type,
        )

    def _transport_error(self, exc: httpx.HTTPError) -> AIError:
        return AIError(
            f"Transport error: {exc}",
            ErrorCode.PROVIDER_ERROR,
            provider=self.provider_type,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def map_http_error(provider: ProviderType, status_code: int, detail: str) -> AIError:
    """Translate a non-2xx HTTP status into an ``AIError``.

    Args:
        provider: Backend that returned the status.
        status_code: HTTP status code.
        detail: Error detail extracted from the body.

    Returns:
        AIError with the matching taxonomy code and retryable flag.
    """
    message = f"HTTP {status_code}: {detail}"
    meta = {"status_code": status_code}
    lowered = detail.lower()
    if status_code in (401, 403):
        code = ErrorCode.AUTHENTICATION_ERROR
    elif status_code == 429:
        code = ErrorCode.RATE_LIMIT_EXCEEDED
    elif status_code in (400, 413) and any(m in lowered for m in _CONTEXT_MARKERS):
        code = ErrorCode.CONTEXT_LENGTH_EXCEEDED
    elif 400 <= status_code < 500 and status_code != 408:
        code = ErrorCode.INVALID_REQUEST
    else:
        code = ErrorCode.PROVIDER_ERROR
    return AIError(message, code, provider=provider, metadata=meta)


def extract_error(resp: httpx.Response) -> str:
    """Extract error detail from a non-2xx API response.

    Args:
        resp: The httpx response object.

    Returns:
        Human-readable error description.
    """
    try:
        body = resp.json()
    except ValueError:
        return str(resp.text[:500])
    if not isinstance(body, dict):
        return str(body)[:500]
    error = body.get("error", body.get("message", body))
    if isinstance(error, dict):
        return str(error.get("message", str(body)))
    return str(error)


async def iter_sse_data(resp: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield parsed JSON payloads from a server-sent events stream.

    Skips comments, blank lines, non-JSON payloads, and stops at the
    ``[DONE]`` sentinel.

    Args:
        resp: A streaming httpx response.

    Yields:
        Each ``data:`` payload decoded as a dict.
    """
    async for line in resp.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[len("data:") :].strip()
        if not payload:
            continue
        if payload == "[DONE]":
            break
        try:
            data = json.loads(payload)
        except ValueError:
            continue
        if isinstance(data, dict):
            yield data
