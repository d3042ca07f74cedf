"""Google Gemini provider.

Async HTTP provider for the Gemini ``generateContent`` API. Maps the
``assistant`` role to Gemini's ``model`` role, hoists system messages
into ``systemInstruction``, and translates tool calls to and from
``functionCall`` / ``functionResponse`` parts.
"""

from __future__ import annotations

import time
import uuid
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

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "BLOCKLIST": "content_filter",
}


class GoogleProvider(Provider):
    """Async provider for the Gemini API.

    Args:
        api_key: Google AI Studio API key.
        base_url: Override for the API root.
        timeout: Request timeout in seconds.
        headers: Extra headers sent with every request.
    """

    provider_type = ProviderType.GOOGLE

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not api_key:
            raise ValueError(
                "Google API key is required. Set GOOGLE_API_KEY (or GEMINI_API_KEY) env var "
                "or add api_key to ~/.switchboard/config.toml"
            )
        self._api_key = api_key
        self._base_url = (base_url or GEMINI_API_BASE).rstrip("/")
        self._timeout = timeout
        self._extra_headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GoogleProvider:
        """Open the underlying HTTP connection pool."""
        headers = {"x-goog-api-key": self._api_key, "Content-Type": "application/json"}
        headers.update(self._extra_headers)
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), headers=headers)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def generate_url(self, model: str, *, stream: bool = False) -> str:
        if stream:
            return f"{self._base_url}/models/{model}:streamGenerateContent?alt=sse"
        return f"{self._base_url}/models/{model}:generateContent"

    async def complete(self, request: CompletionRequest, model: str) -> CompletionResponse:
        """Send a ``generateContent`` request.

        Args:
            request: The request; messages are forwarded in order.
            model: Gemini model identifier.

        Returns:
            CompletionResponse with content, tool calls, usage, and latency.

        Raises:
            AIError: On timeout, transport failure, or non-200 status.
            RuntimeError: If the client is used outside a context manager.
        """
        client = self._require_client()
        payload = build_payload(request)
        start = time.monotonic()

        try:
            resp = await client.post(self.generate_url(model), json=payload)
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc

        if resp.status_code != 200:
            raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))

        data = resp.json()
        text, tool_calls, finish = _parse_candidate(data)
        return self._build_response(
            response_id=str(data.get("responseId", "")),
            model=model,
            content=text,
            tool_calls=tool_calls,
            finish_reason=finish or "stop",
            usage=_extract_usage(data),
            start=start,
        )

    async def stream_chunks(
        self, request: CompletionRequest, model: str
    ) -> AsyncIterator[StreamChunk]:
        """Stream a ``streamGenerateContent`` response.

        Args:
            request: The request; messages are forwarded in order.
            model: Gemini model identifier.

        Yields:
            StreamChunk objects in arrival order.

        Raises:
            AIError: On timeout, transport failure, or non-200 status.
        """
        client = self._require_client()
        payload = build_payload(request)
        try:
            async with client.stream(
                "POST", self.generate_url(model, stream=True), json=payload
            ) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    raise map_http_error(self.provider_type, resp.status_code, extract_error(resp))
                async for data in iter_sse_data(resp):
                    text, tool_calls, finish = _parse_candidate(data)
                    usage = _extract_usage(data) if data.get("usageMetadata") else None
                    yield StreamChunk(
                        id=str(data.get("responseId", "")),
                        provider=self.provider_type,
                        model=model,
                        delta=text,
                        tool_calls=tool_calls,
                        finish_reason=finish,
                        usage=usage,
                    )
        except httpx.TimeoutException:
            raise self._timeout_error(self._timeout) from None
        except httpx.HTTPError as exc:
            raise self._transport_error(exc) from exc


def build_payload(request: CompletionRequest) -> dict[str, Any]:
    """Translate a CompletionRequest into a Gemini request body.

    Args:
        request: The request.

    Returns:
        JSON-serializable request body.
    """
    system_parts = [{"text": m.content} for m in request.messages if m.role == "system"]
    payload: dict[str, Any] = {"contents": _format_contents(request.messages)}
    if system_parts:
        payload["systemInstruction"] = {"parts": system_parts}

    generation: dict[str, Any] = {}
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if request.max_tokens is not None:
        generation["maxOutputTokens"] = request.max_tokens
    if request.top_p is not None:
        generation["topP"] = request.top_p
    if request.stop:
        generation["stopSequences"] = list(request.stop)
    if generation:
        payload["generationConfig"] = generation

    if request.tools:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in request.tools
                ]
            }
        ]
    return payload


def _format_contents(messages: list[Message]) -> list[dict[str, Any]]:
    """Map non-system messages onto Gemini ``contents``."""
    call_names: dict[str, str] = {}
    contents: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        if message.role == "tool":
            name = message.name or call_names.get(message.tool_call_id or "", "tool")
            response = {"name": name, "response": {"content": message.content}}
            contents.append({"role": "user", "parts": [{"functionResponse": response}]})
            continue
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for tc in message.tool_calls:
            call_names[tc.id] = tc.name
            parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
        role = "model" if message.role == "assistant" else "user"
        contents.append({"role": role, "parts": parts or [{"text": ""}]})
    return contents


def _parse_candidate(data: dict[str, Any]) -> tuple[str, list[ToolCall], FinishReason | None]:
    """Extract text, tool calls, and finish reason from the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates:
        return "", [], None
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in parts:
        if "text" in part:
            texts.append(str(part["text"]))
        elif "functionCall" in part:
            call = part["functionCall"]
            tool_calls.append(
                ToolCall(
                    id=str(call.get("id") or f"call-{uuid.uuid4().hex[:12]}"),
                    name=str(call.get("name", "")),
                    arguments=call.get("args") or {},
                )
            )
    raw_finish = candidate.get("finishReason")
    finish: FinishReason | None = None
    if tool_calls:
        finish = "tool_calls"
    elif raw_finish:
        finish = _FINISH_REASONS.get(raw_finish, "stop")
    return "".join(texts), tool_calls, finish


def _extract_usage(data: dict[str, Any]) -> UsageInfo:
    meta = data.get("usageMetadata") or {}
    prompt = int(meta.get("promptTokenCount") or 0)
    completion = int(meta.get("candidatesTokenCount") or 0)
    total = int(meta.get("totalTokenCount") or prompt + completion)
    return UsageInfo(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
