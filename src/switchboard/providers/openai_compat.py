"""OpenAI-compatible chat completions provider.

One adapter for every backend that speaks the OpenAI chat completions
wire format: Groq, OpenAI, xAI, OpenRouter, and local servers (Ollama,
vLLM, LM Studio). The backends differ only in base URL, auth, and a few
headers, so they share this implementation and are told apart by
``provider_type``.

Typical usage::

    import asyncio
    from switchboard.models import CompletionRequest, Message
    from switchboard.providers.openai_compat import OpenAICompatibleProvider
    from switchboard.types import ProviderType

    async def main():
        async with OpenAICompatibleProvider(ProviderType.GROQ, api_key="gsk_...") as provider:
            request = CompletionRequest(messages=[Message(role="user", content="Hello")])
            response = await provider.complete(request, "llama-3.3-70b-versatile")

    asyncio.run(main())
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from switchboard.models import (
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    Message,
    StreamChunk,
    ToolCall,
    UsageInfo,
)
from switchboard.providers.base import (
    DEFAULT_TIMEOUT,
    Provider,
    extract_error,
    iter_sse_data,
    map_http_error,
)
from switchboard.types import ProviderType

DEFAULT_BASE_URLS: dict[ProviderType, str] = {
    ProviderType.GROQ: "https://api.groq.com/openai/v1",
    ProviderType.OPENAI: "https://api.openai.com/v1",
    ProviderType.XAI: "https://api.x.ai/v1",
    ProviderType.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderType.LOCAL: "http://localhost:11434/v1",
}

APP_NAME = "Switchboard"

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}


class OpenAICompatibleProvider(Provider):
    """Async provider for OpenAI-style ``/chat/completions`` endpoints.

    Uses ``httpx.AsyncClient`` for connection pooling and async I/O.
    Designed to be used as an async context manager.

    Args:
        provider_type: Which backend this instance talks to.
        api_key: API key. Optional for ``local``.
        base_url: Endpoint root; defaults per provider type.
        timeout: Request timeout in seconds.
        headers: Extra headers sent with every request.

    Example::

        async with OpenAICompatibleProvider(ProviderType.OPENAI, api_key="sk-...") as p:
            resp = await p.complete(request, "gpt-4o-mini")
            print(resp.content)
    """

    def __init__(
        self,
        provider_type: ProviderType,
        api_key: str = "",
        *,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
    ) -> None:
        if provider_type not in DEFAULT_BASE_URLS:
            raise ValueError(f"{provider_type} does not speak the OpenAI wire format")
        if not api_key and provider_type != ProviderType.LOCAL:
            raise ValueError(
                f"{provider_type.value} API key is required. Set the provider's API key "
                "env var or add api_key to ~/.switchboard/config.toml"
            )
        self.provider_type = provider_type
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URLS[provider_type]).rstrip("/")
        self._timeout = timeout
        self._extra_headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    @property
    def completions_url(self) -> str:
        return f"{self._base_url}/chat/completions"

    async def __aenter__(self) -> OpenAICompatibleProvider:
        """Open the underlying HTTP connection pool."""
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self.provider_type == ProviderType.OPENROUTER:
            headers["X-Title"] = APP_NAME
        headers.update(self._extra_headers)
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), headers=headers)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def complete(self, request: CompletionRequest, model: str) -> CompletionResponse:
        """Send a chat completion request to one model.

        Args:
            request: The request; messages are forwarded in order.
            model: Backend model identifier.

        Returns:
            CompletionResponse with content, tool calls, usage, and latency.

        Raises:
            AIError: On timeout, transport failure, or non-200 status.
            RuntimeError: If the client is used outside a context manager.
        """
        client = self._require_client()
        payload = build_payload(request, model)
        start = time.monotonic()

        try:
            resp = await client.post(self.completions_url, json=payload)
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc

        if resp.status_code != 200:
            raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))

        data = resp.json()
        message = _extract_message(data)
        return self._build_response(
            response_id=str(data.get("id", "")),
            model=str(data.get("model", model)) or model,
            content=message["content"],
            tool_calls=message["tool_calls"],
            finish_reason=_extract_finish_reason(data),
            usage=_extract_usage(data),
            start=start,
        )

    async def stream_chunks(
        self, request: CompletionRequest, model: str
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as server-sent events.

        Tool call fragments are buffered and emitted whole on the final
        chunk.

        Args:
            request: The request; messages are forwarded in order.
            model: Backend model identifier.

        Yields:
            StreamChunk objects in arrival order.

        Raises:
            AIError: On timeout, transport failure, or non-200 status.
        """
        client = self._require_client()
        payload = build_payload(request, model)
        payload["stream"] = True
        if self.provider_type == ProviderType.OPENAI:
            payload["stream_options"] = {"include_usage": True}

        pending_tools: dict[int, dict[str, str]] = {}
        try:
            async with client.stream("POST", self.completions_url, json=payload) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))
                async for data in iter_sse_data(resp):
                    chunk = self._parse_stream_event(data, model, pending_tools)
                    if chunk is not None:
                        yield chunk
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc

    def _parse_stream_event(
        self,
        data: dict[str, Any],
        model: str,
        pending_tools: dict[int, dict[str, str]],
    ) -> StreamChunk | None:
        usage = _extract_usage(data) if data.get("usage") else None
        choices = data.get("choices") or []
        if not choices:
            if usage is None:
                return None
            return StreamChunk(
                id=str(data.get("id", "")), provider=self.provider_type, model=model, usage=usage
            )

        choice = choices[0]
        delta = choice.get("delta") or {}
        for fragment in delta.get("tool_calls") or []:
            slot = pending_tools.setdefault(
                int(fragment.get("index", 0)), {"id": "", "name": "", "arguments": ""}
            )
            slot["id"] = fragment.get("id") or slot["id"]
            function = fragment.get("function") or {}
            slot["name"] += function.get("name") or ""
            slot["arguments"] += function.get("arguments") or ""

        finish_raw = choice.get("finish_reason")
        finish: FinishReason | None = None
        if finish_raw:
            finish = _FINISH_REASONS.get(finish_raw, "stop")
        tool_calls: list[ToolCall] = []
        if finish is not None and pending_tools:
            tool_calls = [
                ToolCall(
                    id=slot["id"],
                    name=slot["name"],
                    arguments=_parse_arguments(slot["arguments"]),
                )
                for _, slot in sorted(pending_tools.items())
            ]
            pending_tools.clear()

        return StreamChunk(
            id=str(data.get("id", "")),
            provider=self.provider_type,
            model=model,
            delta=delta.get("content") or "",
            tool_calls=tool_calls,
            finish_reason=finish,
            usage=usage,
        )


def build_payload(request: CompletionRequest, model: str) -> dict[str, Any]:
    """Translate a CompletionRequest into an OpenAI chat completions body.

    Args:
        request: The request.
        model: Backend model identifier.

    Returns:
        JSON-serializable request body. Unset parameters are omitted.
    """
    payload: dict[str, Any] = {
        "model": model,
        "messages": [_format_message(m) for m in request.messages],
    }
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    if request.top_p is not None:
        payload["top_p"] = request.top_p
    if request.stop:
        payload["stop"] = list(request.stop)
    if request.user:
        payload["user"] = request.user
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in request.tools
        ]
        if request.tool_choice in ("auto", "none", "required"):
            payload["tool_choice"] = request.tool_choice
        elif request.tool_choice:
            payload["tool_choice"] = {"type": "function", "function": {"name": request.tool_choice}}
    return payload


def _format_message(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.name:
        data["name"] = message.name
    if message.tool_call_id:
        data["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        data["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
            }
            for tc in message.tool_calls
        ]
    return data


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_value": parsed}


def _extract_message(data: dict[str, Any]) -> dict[str, Any]:
    """Extract content and tool calls from the first choice.

    Args:
        data: Parsed JSON response body.

    Returns:
        Dict with ``content`` (str) and ``tool_calls`` (list of ToolCall).
        Malformed bodies yield a parse-failure description as content.
    """
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        return {"content": f"[Failed to parse response: {data}]", "tool_calls": []}
    tool_calls = [
        ToolCall(
            id=str(tc.get("id", "")),
            name=str(tc.get("function", {}).get("name", "")),
            arguments=_parse_arguments(tc.get("function", {}).get("arguments")),
        )
        for tc in message.get("tool_calls") or []
    ]
    return {"content": message.get("content") or "", "tool_calls": tool_calls}


def _extract_finish_reason(data: dict[str, Any]) -> FinishReason:
    try:
        raw = data["choices"][0].get("finish_reason")
    except (KeyError, IndexError, TypeError, AttributeError):
        return "stop"
    return _FINISH_REASONS.get(raw or "stop", "stop")


def _extract_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage from an API response.

    Args:
        data: Parsed JSON response body.

    Returns:
        UsageInfo; zeros when the backend did not report usage.
    """
    usage = data.get("usage") or {}
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    total = int(usage.get("total_tokens") or prompt + completion)
    return UsageInfo(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
