"""Shared fixtures: a scriptable in-process provider and service builders."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from switchboard.config import ProviderConfig, RoutingConfig, ServiceConfig
from switchboard.models import (
    AIEvent,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
    Message,
    StreamChunk,
    ToolCall,
    UsageInfo,
)
from switchboard.providers.base import Provider
from switchboard.service import AIService
from switchboard.types import ProviderType, RoutingMode


class Delay:
    """Reply that sleeps before answering (or forever when ``seconds`` is None)."""

    def __init__(self, seconds: float | None, content: str = "late") -> None:
        self.seconds = seconds
        self.content = content


Reply = str | Message | BaseException | Delay | list[Any]


def make_response(
    provider: ProviderType,
    model: str,
    content: str = "ok",
    tool_calls: list[ToolCall] | None = None,
) -> CompletionResponse:
    message = Message(role="assistant", content=content, tool_calls=list(tool_calls or []))
    finish = "tool_calls" if tool_calls else "stop"
    return CompletionResponse(
        id=f"{provider.value}-resp",
        provider=provider,
        model=model,
        choices=[CompletionChoice(index=0, message=message, finish_reason=finish)],
        usage=UsageInfo(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        latency_ms=5,
        finish_reason=finish,
    )


class FakeProvider(Provider):
    """Provider that answers from a script instead of the network.

    Each call pops the next reply. A string answers with that content, a
    ``Message`` answers with its content and tool calls, an exception is
    raised, and a ``Delay`` sleeps first. For ``stream_chunks`` a list
    reply yields its strings as chunks and raises any exception in it.
    When the script runs dry every call answers ``"ok"``.
    """

    def __init__(self, provider_type: ProviderType, replies: list[Reply] | None = None) -> None:
        self.provider_type = provider_type
        self.replies: list[Reply] = list(replies or [])
        self.calls: list[tuple[CompletionRequest, str]] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self) -> FakeProvider:
        self.entered = True
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.exited = True

    def _next(self) -> Reply:
        return self.replies.pop(0) if self.replies else "ok"

    async def complete(self, request: CompletionRequest, model: str) -> CompletionResponse:
        self.calls.append((request, model))
        reply = self._next()
        if isinstance(reply, Delay):
            if reply.seconds is None:
                await asyncio.Event().wait()
            await asyncio.sleep(reply.seconds)
            reply = reply.content
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, Message):
            return make_response(self.provider_type, model, reply.content, reply.tool_calls)
        return make_response(self.provider_type, model, str(reply))

    async def stream_chunks(self, request: CompletionRequest, model: str):  # type: ignore[override]
        self.calls.append((request, model))
        reply = self._next()
        if isinstance(reply, BaseException):
            raise reply
        parts = reply if isinstance(reply, list) else str(reply).split(" ")
        for index, part in enumerate(parts):
            if isinstance(part, BaseException):
                raise part
            if isinstance(part, Delay):
                await asyncio.sleep(part.seconds or 3600)
                continue
            delta = part if index == 0 or isinstance(reply, list) else f" {part}"
            yield StreamChunk(id="stream-1", provider=self.provider_type, model=model, delta=delta)
        yield StreamChunk(
            id="stream-1",
            provider=self.provider_type,
            model=model,
            finish_reason="stop",
            usage=UsageInfo(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


def user(text: str) -> CompletionRequest:
    return CompletionRequest(messages=[Message(role="user", content=text)])


def custom_routing(*order: ProviderType) -> RoutingConfig:
    return RoutingConfig(
        mode=RoutingMode.CUSTOM, primary_provider=order[0], fallback_chain=list(order[1:])
    )


def build_service(
    *providers: FakeProvider,
    config: ServiceConfig | None = None,
    order: tuple[ProviderType, ...] | None = None,
    events: list[AIEvent] | None = None,
    **kwargs: Any,
) -> AIService:
    """AIService over fake providers, routed in ``order`` (custom mode)."""
    cfg = config or ServiceConfig()
    for p in providers:
        cfg.providers.setdefault(p.provider_type, ProviderConfig(type=p.provider_type))
    if order is None:
        order = tuple(p.provider_type for p in providers)
    cfg.routing = custom_routing(*order)
    callback: Callable[[AIEvent], None] | None = events.append if events is not None else None
    return AIService(cfg, providers=list(providers), event_callback=callback, **kwargs)


def event_types(events: list[AIEvent]) -> list[str]:
    return [e.type.value for e in events]


@pytest.fixture
def events() -> list[AIEvent]:
    return []
