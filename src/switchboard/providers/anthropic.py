"""Anthropic Messages API provider.

Async HTTP provider for Anthropic's ``/v1/messages`` endpoint. Hoists
system messages into the top-level ``system`` field, maps tool calls and
tool results onto content blocks, and always sends ``max_tokens``
(required by the API).

Typical usage::

    import asyncio
    from switchboard.providers.anthropic import AnthropicProvider

    async def main():
        async with AnthropicProvider(api_key="sk-ant-...") as provider:
            response = await provider.complete(request, "claude-sonnet-4-5-20250929")

    asyncio.run(main())
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from switchboard.errors import AIError
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
from switchboard.types import ErrorCode, ProviderType

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}


class AnthropicProvider(Provider):
    """Async provider for the Anthropic Messages API.

    Uses ``httpx.AsyncClient`` for connection pooling and async I/O.
    Designed to be used as an async context manager.

    Args:
        api_key: Anthropic API key.
        base_url: Override for the Messages endpoint URL.
        timeout: Request timeout in seconds.
        max_tokens: Output cap used when the request sets none.
        headers: Extra headers sent with every request.
    """

    provider_type = ProviderType.ANTHROPIC

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(
                "Anthropic API key is required. Set ANTHROPIC_API_KEY env var "
                "or add api_key to ~/.switchboard/config.toml"
            )
        self._api_key = api_key
        self._url = base_url or ANTHROPIC_API_URL
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._extra_headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> AnthropicProvider:
        """Open the underlying HTTP connection pool."""
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        headers.update(self._extra_headers)
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), headers=headers)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_payload(self, request: CompletionRequest, model: str) -> dict[str, Any]:
        """Translate a CompletionRequest into a Messages API body.

        Args:
            request: The request.
            model: Anthropic model identifier.

        Returns:
            JSON-serializable request body.
        """
        system_text, chat_messages = _extract_system(request.messages)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens or self._max_tokens,
            "messages": _format_messages(chat_messages),
        }
        if system_text is not None:
            payload["system"] = system_text
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in request.tools
            ]
            choice = _format_tool_choice(request.tool_choice)
            if choice is not None:
                payload["tool_choice"] = choice
        return payload

    async def complete(self, request: CompletionRequest, model: str) -> CompletionResponse:
        """Send a Messages API request.

        Args:
            request: The request; messages are forwarded in order.
            model: Anthropic model identifier.

        Returns:
            CompletionResponse with content, tool calls, usage, and latency.

        Raises:
            AIError: On timeout, transport failure, or non-200 status.
            RuntimeError: If the client is used outside a context manager.
        """
        client = self._require_client()
        payload = self.build_payload(request, model)
        start = time.monotonic()

        try:
            resp = await client.post(self._url, json=payload)
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc

        if resp.status_code != 200:
            raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))

        data = resp.json()
        return self._build_response(
            response_id=str(data.get("id", "")),
            model=str(data.get("model") or model),
            content=_extract_content(data),
            tool_calls=_extract_tool_calls(data),
            finish_reason=_STOP_REASONS.get(data.get("stop_reason") or "end_turn", "stop"),
            usage=_extract_usage(data),
            start=start,
        )

    async def stream_chunks(
        self, request: CompletionRequest, model: str
    ) -> AsyncIterator[StreamChunk]:
        """Stream a Messages API response.

        Args:
            request: The request; messages are forwarded in order.
            model: Anthropic model identifier.

        Yields:
            StreamChunk objects in arrival order. Tool calls arrive whole
            when their content block closes.

        Raises:
            AIError: On timeout, transport failure, non-200 status, or an
                in-stream ``error`` event.
        """
        client = self._require_client()
        payload = self.build_payload(request, model)
        payload["stream"] = True

        message_id = ""
        usage = UsageInfo()
        blocks: dict[int, dict[str, str]] = {}
        try:
            async with client.stream("POST", self._url, json=payload) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))
                async for event in iter_sse_data(resp):
                    etype = event.get("type")
                    if etype == "message_start":
                        message = event.get("message") or {}
                        message_id = str(message.get("id", ""))
                        usage.prompt_tokens = int(
                            (message.get("usage") or {}).get("input_tokens") or 0
                        )
                    elif etype == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            blocks[int(event.get("index", 0))] = {
                                "id": str(block.get("id", "")),
                                "name": str(block.get("name", "")),
                                "input": "",
                            }
                    elif etype == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta":
                            yield StreamChunk(
                                id=message_id,
                                provider=self.provider_type,
                                model=model,
                                delta=str(delta.get("text", "")),
                            )
                        elif delta.get("type") == "input_json_delta":
                            slot = blocks.get(int(event.get("index", 0)))
                            if slot is not None:
                                slot["input"] += str(delta.get("partial_json", ""))
                    elif etype == "content_block_stop":
                        slot = blocks.pop(int(event.get("index", 0)), None)
                        if slot is not None:
                            yield StreamChunk(
                                id=message_id,
                                provider=self.provider_type,
                                model=model,
                                tool_calls=[
                                    ToolCall(
                                        id=slot["id"],
                                        name=slot["name"],
                                        arguments=_parse_input(slot["input"]),
                                    )
                                ],
                            )
                    elif etype == "message_delta":
                        delta = event.get("delta") or {}
                        usage.completion_tokens = int(
                            (event.get("usage") or {}).get("output_tokens") or 0
                        )
                        usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
                        stop = delta.get("stop_reason")
                        yield StreamChunk(
                            id=message_id,
                            provider=self.provider_type,
                            model=model,
                            finish_reason=_STOP_REASONS.get(stop or "end_turn", "stop"),
                            usage=usage,
                        )
                    elif etype == "error":
                        error = event.get("error") or {}
                        raise AIError(
                            f"Stream error: {error.get('message', error)}",
                            ErrorCode.PROVIDER_ERROR,
                            provider=self.provider_type,
                        )
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc


def _extract_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Separate system messages from chat messages.

    Multiple system messages are joined with blank lines. Non-system
    messages keep their original order.

    Args:
        messages: Request messages.

    Returns:
        Tuple of (system text or None, remaining messages).
    """
    system_parts = [m.content for m in messages if m.role == "system"]
    remaining = [m for m in messages if m.role != "system"]
    if not system_parts:
        return None, remaining
    return "\n\n".join(system_parts), remaining


def _format_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Map chat messages onto Anthropic roles and content blocks.

    Tool results become ``tool_result`` blocks in a user turn; consecutive
    results share one turn. Assistant tool calls become ``tool_use`` blocks.
    """
    formatted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content,
            }
            last = formatted[-1] if formatted else None
            if last and last["role"] == "user" and isinstance(last["content"], list):
                last["content"].append(block)
            else:
                formatted.append({"role": "user", "content": [block]})
        elif message.role == "assistant" and message.tool_calls:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            blocks.extend(
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                for tc in message.tool_calls
            )
            formatted.append({"role": "assistant", "content": blocks})
        else:
            formatted.append({"role": message.role, "content": message.content})
    return formatted


def _format_tool_choice(choice: str | None) -> dict[str, str] | None:
    if choice is None:
        return None
    if choice == "auto":
        return {"type": "auto"}
    if choice == "required":
        return {"type": "any"}
    if choice == "none":
        return {"type": "none"}
    return {"type": "tool", "name": choice}


def _extract_content(data: dict[str, Any]) -> str:
    """Extract text from Anthropic's content block array.

    Anthropic returns ``{"content": [{"type": "text", "text": "..."}]}``.
    Concatenates all text blocks; non-text blocks are skipped.

    Args:
        data: Parsed JSON response body.

    Returns:
        Concatenated text; empty when the reply is only tool calls; a
        placeholder when there is no usable block; an error description
        when the body is malformed.
    """
    try:
        blocks = data["content"]
        texts = [b["text"] for b in blocks if b.get("type") == "text"]
    except (KeyError, TypeError, AttributeError):
        return f"[Failed to parse response: {data}]"
    if texts:
        return "".join(texts)
    if any(b.get("type") == "tool_use" for b in blocks):
        return ""
    return "[No text content in response]"


def _extract_tool_calls(data: dict[str, Any]) -> list[ToolCall]:
    blocks = data.get("content") or []
    return [
        ToolCall(
            id=str(b.get("id", "")),
            name=str(b.get("name", "")),
            arguments=b.get("input") or {},
        )
        for b in blocks
        if isinstance(b, dict) and b.get("type") == "tool_use"
    ]


def _extract_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage from an API response.

    Args:
        data: Parsed JSON response body.

    Returns:
        UsageInfo; zeros for whichever side the API did not report.
    """
    usage = data.get("usage") or {}
    prompt = int(usage.get("input_tokens") or 0)
    completion = int(usage.get("output_tokens") or 0)
    return UsageInfo(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
    )


def _parse_input(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_value": parsed}
