"""Tests for the Anthropic provider.

Covers: construction validation, system message extraction, tool call
and tool result content blocks, payload building, mocked complete(),
content block extraction, usage, streaming over a mock transport, and
async context manager lifecycle.
"""

from __future__ import annotations

import json
import sys
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from switchboard.errors import AIError
from switchboard.models import CompletionRequest, Message, ToolCall, ToolDefinition
from switchboard.providers.anthropic import (
    ANTHROPIC_API_URL,
    ANTHROPIC_VERSION,
    AnthropicProvider,
    _extract_content,
    _extract_system,
    _extract_usage,
    _format_messages,
)
from switchboard.types import ErrorCode, ProviderType

MODEL = "claude-sonnet-4-5-20250929"


def ask(*messages: Message, **kwargs: Any) -> CompletionRequest:
    return CompletionRequest(
        messages=list(messages) or [Message(role="user", content="Hello")], **kwargs
    )


# ---------------------------------------------------------------------------
# Construction validation
# ---------------------------------------------------------------------------


class TestAnthropicProviderConstruction:
    """AnthropicProvider.__init__() validation."""

    def test_valid_api_key(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        assert provider._api_key == "sk-ant-test"
        assert provider.provider_type == ProviderType.ANTHROPIC

    def test_empty_api_key_raises(self) -> None:
        with pytest.raises(ValueError, match="API key is required"):
            AnthropicProvider(api_key="")

    def test_defaults(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        assert provider._timeout == 60.0
        assert provider._max_tokens == 4096
        assert provider._url == ANTHROPIC_API_URL


# ---------------------------------------------------------------------------
# Async context manager
# ---------------------------------------------------------------------------


@pytest.mark.skipif(
    sys.platform == "win32",
    reason="Slow asyncio overhead on Windows; validated on Linux CI",
)
class TestAsyncContextManager:
    """AnthropicProvider async context manager lifecycle."""

    @pytest.mark.asyncio
    async def test_enter_and_exit(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        assert provider._client is None
        async with provider:
            assert provider._client is not None
        assert provider._client is None

    @pytest.mark.asyncio
    async def test_complete_outside_context_raises(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        with pytest.raises(RuntimeError, match="context manager"):
            await provider.complete(ask(), MODEL)

    @pytest.mark.asyncio
    async def test_headers_set_correctly(self) -> None:
        """Verify x-api-key and anthropic-version headers are set."""
        provider = AnthropicProvider(api_key="sk-ant-test")
        async with provider:
            headers = provider._client.headers
            assert headers["x-api-key"] == "sk-ant-test"
            assert headers["anthropic-version"] == ANTHROPIC_VERSION
            assert headers["content-type"] == "application/json"


# ---------------------------------------------------------------------------
# Message translation
# ---------------------------------------------------------------------------


class TestExtractSystem:
    """_extract_system() separates system messages from chat messages."""

    def test_no_system_messages(self) -> None:
        messages = [Message(role="user", content="Hello")]
        system_text, remaining = _extract_system(messages)
        assert system_text is None
        assert remaining == messages

    def test_multiple_system_messages(self) -> None:
        messages = [
            Message(role="system", content="Be helpful."),
            Message(role="user", content="First"),
            Message(role="system", content="Be concise."),
            Message(role="assistant", content="Reply"),
        ]
        system_text, remaining = _extract_system(messages)
        assert system_text == "Be helpful.\n\nBe concise."
        assert [m.content for m in remaining] == ["First", "Reply"]


class TestFormatMessages:
    """Tool calls and results map onto content blocks."""

    def test_tool_round_trip(self) -> None:
        formatted = _format_messages(
            [
                Message(role="user", content="Weather in Oslo and Rome?"),
                Message(
                    role="assistant",
                    content="Checking.",
                    tool_calls=[
                        ToolCall(id="t1", name="get_weather", arguments={"city": "Oslo"}),
                        ToolCall(id="t2", name="get_weather", arguments={"city": "Rome"}),
                    ],
                ),
                Message(role="tool", content="3C", tool_call_id="t1"),
                Message(role="tool", content="18C", tool_call_id="t2"),
            ]
        )
        assert [m["role"] for m in formatted] == ["user", "assistant", "user"]
        assert formatted[1]["content"][0] == {"type": "text", "text": "Checking."}
        assert formatted[1]["content"][1]["type"] == "tool_use"
        assert formatted[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "3C"},
            {"type": "tool_result", "tool_use_id": "t2", "content": "18C"},
        ]


class TestBuildPayload:
    def test_max_tokens_always_sent(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test", max_tokens=2048)
        assert provider.build_payload(ask(), MODEL)["max_tokens"] == 2048
        assert provider.build_payload(ask(max_tokens=10), MODEL)["max_tokens"] == 10

    def test_system_stop_and_tools(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        request = ask(
            Message(role="system", content="Be brief."),
            Message(role="user", content="Hi"),
            stop=["END"],
            tools=[ToolDefinition(name="lookup", description="Look up")],
            tool_choice="required",
        )
        payload = provider.build_payload(request, MODEL)
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Hi"}]
        assert payload["stop_sequences"] == ["END"]
        assert payload["tools"][0]["input_schema"] == {"type": "object", "properties": {}}
        assert payload["tool_choice"] == {"type": "any"}


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestExtractContent:
    """_extract_content() extracts text from content block arrays."""

    def test_multiple_text_blocks(self) -> None:
        data = {"content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "world!"}]}
        assert _extract_content(data) == "Hello world!"

    def test_non_text_blocks_skipped(self) -> None:
        data = {
            "content": [
                {"type": "thinking", "thinking": "Let me think..."},
                {"type": "text", "text": "The answer is 42."},
            ],
        }
        assert _extract_content(data) == "The answer is 42."

    def test_tool_only_reply_is_empty(self) -> None:
        data = {"content": [{"type": "tool_use", "id": "t1", "name": "calc", "input": {}}]}
        assert _extract_content(data) == ""

    def test_no_usable_blocks(self) -> None:
        assert _extract_content({"content": []}) == "[No text content in response]"

    def test_missing_content_key(self) -> None:
        assert "Failed to parse" in _extract_content({"unexpected": "data"})


class TestExtractUsage:
    def test_both_fields_present(self) -> None:
        usage = _extract_usage({"usage": {"input_tokens": 12, "output_tokens": 6}})
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 6, 18)

    def test_missing_usage(self) -> None:
        assert _extract_usage({}).total_tokens == 0


# ---------------------------------------------------------------------------
# Mocked complete()
# ---------------------------------------------------------------------------


def _mock_anthropic_success(**overrides: Any) -> httpx.Response:
    """Build a mock httpx.Response for a successful Anthropic completion."""
    body = {
        "id": "msg_test123",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": "Hello back!"}],
        "model": MODEL,
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 1000, "output_tokens": 100},
    }
    body.update(overrides)
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = 200
    resp.json.return_value = body
    return resp


class TestComplete:
    """AnthropicProvider.complete() with a mocked client."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        async with provider:
            mock_post = AsyncMock(return_value=_mock_anthropic_success())
            provider._client.post = mock_post
            response = await provider.complete(ask(), MODEL)

        assert mock_post.call_args.args[0] == ANTHROPIC_API_URL
        assert response.id == "msg_test123"
        assert response.content == "Hello back!"
        assert response.finish_reason == "stop"
        assert response.usage.total_tokens == 1100
        assert response.usage.estimated_cost_usd == pytest.approx(0.003 + 0.0015)

    @pytest.mark.asyncio
    async def test_tool_use_reply(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        reply = _mock_anthropic_success(
            content=[{"type": "tool_use", "id": "t1", "name": "calc", "input": {"x": 2}}],
            stop_reason="tool_use",
        )
        async with provider:
            provider._client.post = AsyncMock(return_value=reply)
            response = await provider.complete(ask(), MODEL)
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls == [ToolCall(id="t1", name="calc", arguments={"x": 2})]

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        async with provider:
            provider._client.post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(AIError) as exc_info:
                await provider.complete(ask(), MODEL)
        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert exc_info.value.provider == ProviderType.ANTHROPIC

    @pytest.mark.asyncio
    async def test_overloaded(self) -> None:
        provider = AnthropicProvider(api_key="sk-ant-test")
        resp = MagicMock(spec=httpx.Response)
        resp.status_code = 529
        resp.json.return_value = {"type": "error", "error": {"message": "Overloaded"}}
        async with provider:
            provider._client.post = AsyncMock(return_value=resp)
            with pytest.raises(AIError) as exc_info:
                await provider.complete(ask(), MODEL)
        assert exc_info.value.code == ErrorCode.PROVIDER_ERROR
        assert exc_info.value.retryable
        assert "Overloaded" in exc_info.value.message


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def _sse(*events: dict[str, Any]) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


class TestStream:
    """stream_chunks() over a mock SSE transport."""

    @pytest.mark.asyncio
    async def test_text_tool_and_usage(self) -> None:
        body = _sse(
            {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 9}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "t1", "name": "calc"}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '{"x": '}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": "2}"}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"},
             "usage": {"output_tokens": 4}},
            {"type": "message_stop"},
        )
        provider = AnthropicProvider(api_key="sk-ant-test")
        provider._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body))
        )
        chunks = []
        response = await provider.stream(ask(), MODEL, chunks.append)
        await provider.__aexit__(None, None, None)

        assert response.id == "msg_1"
        assert response.content == "Hi"
        assert response.tool_calls == [ToolCall(id="t1", name="calc", arguments={"x": 2})]
        assert response.finish_reason == "tool_calls"
        assert response.usage.total_tokens == 13
        assert len(chunks) == 3

    @pytest.mark.asyncio
    async def test_in_stream_error_event(self) -> None:
        body = _sse(
            {"type": "message_start", "message": {"id": "msg_1"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        provider = AnthropicProvider(api_key="sk-ant-test")
        provider._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body))
        )
        with pytest.raises(AIError) as exc_info:
            async for _ in provider.stream_chunks(ask(), MODEL):
                pass
        await provider.__aexit__(None, None, None)
        assert exc_info.value.code == ErrorCode.PROVIDER_ERROR
        assert "Overloaded" in exc_info.value.message
