"""AI service: the single entry point for completions and agent runs.

``AIService`` wires the registry, router, safety manager, memory manager,
response cache, and event emitter into one pipeline:

    input safety -> memory context -> cache -> routing -> adapter call
    (circuit breaker, rate limiter, timeout, sequential fallback) ->
    output safety and redaction -> memory write -> events

Callers receive either a response or exactly one terminal ``AIError``;
fallbacks between providers are reported only as ``provider_fallback``
events.

Typical usage::

    async with AIService(load_config()) as ai:
        response = await ai.complete(
            CompletionRequest(messages=[Message(role="user", content="Hello")])
        )
        print(response.content)
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import re
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from switchboard.cache import ResponseCache
from switchboard.config import EventCallback, ProviderConfig, RoutingConfig, ServiceConfig
from switchboard.errors import AIError
from switchboard.events import AIMetrics, EventEmitter, MetricsCollector
from switchboard.memory import MemoryManager
from switchboard.models import (
    AgentConfig,
    AIEvent,
    CompletionRequest,
    CompletionResponse,
    ExecutionContext,
    ExecutionResult,
    MemoryEntry,
    Message,
    ModelInfo,
    ProviderStatus,
    SafetyCheckResult,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    ToolResult,
    UsageInfo,
)
from switchboard.pricing import estimate_request_tokens
from switchboard.providers import Provider, create_provider
from switchboard.providers.base import ChunkSink
from switchboard.providers.registry import ProviderEntry, ProviderRegistry
from switchboard.providers.retry import RetryHandler
from switchboard.router import AIRouter
from switchboard.safety import SafetyManager
from switchboard.tools import DefaultToolExecutor, ToolExecutor
from switchboard.types import AIEventType, ErrorCode, MemoryType, ProviderType, RoutingDecision

logger = logging.getLogger(__name__)

# Unfinished trailing text a stream holds back before redaction: the last
# word, plus any digit groups before it that may belong to one number.
_HELD_TAIL = re.compile(r"(?:[\d+(][\d\s().-]*)?\S*\Z")

Invoke = Callable[[ProviderEntry, str], Awaitable[CompletionResponse]]


def _new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _last_user_message(messages: list[Message]) -> Message | None:
    return next((m for m in reversed(messages) if m.role == "user"), None)


class AIService:
    """Route, guard, and observe completions across providers.

    Use as an async context manager: entering opens every adapter's HTTP
    client, leaving closes them.

    Args:
        config: Service configuration. Defaults to ``ServiceConfig()``.
        providers: Adapters to register instead of building them from
            ``config.active_providers()``. Each is registered with its
            entry in ``config.providers`` or a default ``ProviderConfig``.
        tool_executor: Runs tool calls during ``execute_agent``.
        memory: Memory manager; built from ``config.memory`` when omitted.
        event_callback: Event sink; overrides
            ``config.observability.event_callback``.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        *,
        providers: list[Provider] | None = None,
        tool_executor: ToolExecutor | None = None,
        memory: MemoryManager | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.config = config or ServiceConfig()
        obs = self.config.observability
        self._metrics = MetricsCollector() if obs.metrics_enabled else None
        self.events = EventEmitter(
            event_callback or obs.event_callback,
            enabled=obs.enabled,
            metrics=self._metrics,
        )
        self.registry = ProviderRegistry(
            self.config.circuit_breaker, on_event=self._registry_event
        )
        self.router = AIRouter(self.registry, self.config.routing)
        self.safety = SafetyManager(self.config.safety)
        self.memory = memory or MemoryManager(self.config.memory)
        self.cache = (
            ResponseCache.from_config(self.config.cache) if self.config.cache.enabled else None
        )
        self.tools = tool_executor or DefaultToolExecutor()
        self._stack: contextlib.AsyncExitStack | None = None

        if providers is None:
            for pcfg in self.config.active_providers():
                self.registry.register(create_provider(pcfg), pcfg)
        else:
            for adapter in providers:
                pcfg = self.config.providers.get(adapter.provider_type) or ProviderConfig(
                    type=adapter.provider_type
                )
                self.registry.register(adapter, pcfg)

    async def __aenter__(self) -> AIService:
        """Open every registered adapter."""
        stack = contextlib.AsyncExitStack()
        try:
            for entry in self.registry.entries():
                await stack.enter_async_context(entry.adapter)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        return self

    async def __aexit__(self, *exc: Any) -> None:
        """Close adapters and wait for pending async event deliveries."""
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        await self.events.drain()

    # -- completions ----------------------------------------------------------

    async def complete(
        self,
        request: CompletionRequest,
        *,
        context: ExecutionContext | None = None,
        routing: RoutingConfig | None = None,
    ) -> CompletionResponse:
        """Complete a conversation on the best available provider.

        Args:
            request: The request.
            context: Identity for events and memory. When given and memory
                is on, the session's earlier turns and relevant long-term
                facts are added to the request and the new turn is
                recorded.
            routing: Routing policy override for this request.

        Returns:
            The validated, redacted response with its routing decision.

        Raises:
            AIError: ``SAFETY_VIOLATION`` when input or output is blocked,
                ``NO_AVAILABLE_PROVIDERS`` when every candidate failed or
                none was available, or a fatal provider code
                (``AUTHENTICATION_ERROR``, ``INVALID_REQUEST``).
        """
        request_id = context.request_id if context else _new_request_id()
        start = time.monotonic()
        self._emit(AIEventType.REQUEST_STARTED, request_id, context, metadata={"stream": False})
        try:
            request = self._prepare(request, request_id, context)
            request = await self._with_memory(request, context, routing)
            if self.cache is not None:
                hit = await self.cache.get(request)
                if hit is not None:
                    self._trace(request_id, "cache hit")
                    self._finish(request_id, context, hit, start)
                    return hit

            decision = self._decide(request, request_id, context, routing)

            async def invoke(entry: ProviderEntry, model: str) -> CompletionResponse:
                return await entry.adapter.complete(request, model)

            response = await self._attempt(decision, request, request_id, context, invoke)
            response = self._check_output(response, request_id, context)
            response = replace(response, routing=decision.to_dict())
        except AIError as exc:
            self._fail(request_id, context, exc, start)
            raise

        if self.cache is not None:
            await self.cache.set(request, response)
        self._remember_turn(request, response, context)
        self._finish(request_id, context, response, start)
        return response

    async def stream(
        self,
        request: CompletionRequest,
        on_chunk: ChunkSink,
        *,
        context: ExecutionContext | None = None,
        routing: RoutingConfig | None = None,
    ) -> CompletionResponse:
        """Stream a completion into ``on_chunk`` and return the aggregate.

        With safety on, a trailing partial word (or run of digits) is held
        back until the next chunk completes it, so redaction always sees
        whole spans. The held text is flushed, redacted, with the final
        chunk. A failure before any text reaches ``on_chunk`` falls back
        like ``complete``; after partial delivery the error is raised as
        is. Cancellation releases the provider slot without counting a
        failure.

        Args:
            request: The request; ``stream`` is forced on.
            on_chunk: Sync or async callable receiving each chunk.
            context: Identity for events and memory.
            routing: Routing policy override.

        Returns:
            The aggregated, validated response.

        Raises:
            AIError: As ``complete``.
        """
        request_id = context.request_id if context else _new_request_id()
        start = time.monotonic()
        self._emit(AIEventType.REQUEST_STARTED, request_id, context, metadata={"stream": True})
        delivered = False
        pending = ""

        async def deliver(chunk: StreamChunk) -> None:
            nonlocal delivered
            result = on_chunk(chunk)
            if inspect.isawaitable(result):
                await result
            delivered = delivered or bool(chunk.delta or chunk.tool_calls)

        async def sink(chunk: StreamChunk) -> None:
            nonlocal pending
            if not self.safety.enabled:
                await deliver(chunk)
                return
            text = pending + chunk.delta
            held = _HELD_TAIL.search(text) if chunk.finish_reason is None else None
            cut = held.start() if held else len(text)
            pending = text[cut:]
            ready = replace(chunk, delta=self.safety.redact_output(text[:cut]))
            if ready.delta or ready.tool_calls or ready.usage or ready.finish_reason:
                await deliver(ready)

        try:
            request = self._prepare(request, request_id, context)
            request = replace(await self._with_memory(request, context, routing), stream=True)
            decision = self._decide(request, request_id, context, routing)

            async def invoke(entry: ProviderEntry, model: str) -> CompletionResponse:
                nonlocal pending
                pending = ""
                response = await entry.adapter.stream(request, model, sink)
                if pending:
                    tail = self.safety.redact_output(pending)
                    pending = ""
                    await deliver(
                        StreamChunk(id=response.id, provider=entry.type, model=model, delta=tail)
                    )
                return response

            response = await self._attempt(
                decision,
                request,
                request_id,
                context,
                invoke,
                can_fall_back=lambda: not delivered,
                retry=False,
            )
            response = self._check_output(response, request_id, context)
            response = replace(response, routing=decision.to_dict())
        except AIError as exc:
            self._fail(request_id, context, exc, start)
            raise

        self._remember_turn(request, response, context)
        self._finish(request_id, context, response, start)
        return response

    async def chat(self, messages: list[Message] | str, **params: Any) -> str:
        """Complete and return only the text.

        Args:
            messages: Conversation, or a single user prompt.
            **params: Extra ``CompletionRequest`` fields.

        Returns:
            The response content.
        """
        if isinstance(messages, str):
            messages = [Message(role="user", content=messages)]
        response = await self.complete(CompletionRequest(messages=messages, **params))
        return response.content

    def route(
        self, request: CompletionRequest, routing: RoutingConfig | None = None
    ) -> RoutingDecision:
        """Dry-run routing for ``request``; no provider is called."""
        return self.router.route(request, routing)

    # -- agents ---------------------------------------------------------------

    async def execute_agent(
        self,
        agent: AgentConfig,
        messages: list[Message],
        context: ExecutionContext | None = None,
    ) -> ExecutionResult:
        """Run an agent loop: complete, run requested tools, repeat.

        Context is the agent's system prompt plus memory-assembled history
        when memory is on. The loop stops at the first response without
        tool calls, after ``max_iterations`` completions, or when
        ``timeout_ms`` elapses.

        Args:
            agent: Agent configuration.
            messages: New messages for this run; the last user message is
                the current input.
            context: Run identity; a fresh session is used when omitted.

        Returns:
            ExecutionResult. Failures are reported in ``error``, never
            raised.
        """
        ctx = context or ExecutionContext(
            agent_id=agent.id,
            session_id=f"session-{uuid.uuid4().hex[:12]}",
            user_id=agent.user_id,
        )
        start = time.monotonic()
        result = ExecutionResult(success=False)
        try:
            async with asyncio.timeout(agent.timeout_ms / 1000):
                await self._run_agent(agent, messages, ctx, result)
        except TimeoutError:
            result.error = AIError(
                f"Agent '{agent.id}' timed out after {agent.timeout_ms} ms",
                ErrorCode.TIMEOUT,
                metadata={"iterations": result.metrics.iterations},
            )
            self._fail(ctx.request_id, ctx, result.error, start)
        except AIError as exc:
            result.error = exc
            self._fail(ctx.request_id, ctx, exc, start)
        result.success = result.error is None and result.response is not None
        result.metrics.total_latency_ms = _elapsed_ms(start)
        return result

    async def _run_agent(
        self,
        agent: AgentConfig,
        messages: list[Message],
        ctx: ExecutionContext,
        result: ExecutionResult,
    ) -> None:
        current = _last_user_message(messages)
        conversation = await self._agent_context(agent, messages, current, ctx, result)
        result.messages = conversation

        for _ in range(agent.max_iterations):
            request = CompletionRequest(
                messages=list(conversation),
                tools=list(agent.tools),
                tool_choice="auto" if agent.tools else None,
                temperature=agent.temperature,
                max_tokens=agent.max_tokens,
                user=ctx.user_id,
            )
            llm_start = time.monotonic()
            try:
                response = await self.complete(request, routing=agent.routing)
            except AIError as exc:
                result.error = exc
                return
            metrics = result.metrics
            metrics.llm_latency_ms += _elapsed_ms(llm_start)
            metrics.iterations += 1
            metrics.usage = metrics.usage + response.usage
            metrics.provider = response.provider
            metrics.model = response.model
            result.safety_checks.extend(response.safety_checks)
            conversation.append(
                Message(role="assistant", content=response.content, tool_calls=response.tool_calls)
            )

            if not response.tool_calls:
                result.response = response
                await self._remember_run(agent, ctx, current, response, result)
                return

            for call in response.tool_calls:
                tool_result = await self._run_tool(call, ctx)
                metrics.tool_latency_ms += tool_result.latency_ms
                result.tool_results.append(tool_result)
                payload = (
                    tool_result.output if tool_result.success else {"error": tool_result.error}
                )
                conversation.append(
                    Message(
                        role="tool",
                        content=json.dumps(payload, default=str, ensure_ascii=False),
                        name=call.name,
                        tool_call_id=call.id,
                    )
                )

        raise AIError(
            f"Agent '{agent.id}' reached max_iterations={agent.max_iterations} "
            "without a final answer",
            ErrorCode.UNKNOWN_ERROR,
            metadata={"reason": "max_iterations"},
        )

    async def _agent_context(
        self,
        agent: AgentConfig,
        messages: list[Message],
        current: Message | None,
        ctx: ExecutionContext,
        result: ExecutionResult,
    ) -> list[Message]:
        conversation: list[Message] = []
        if agent.system_prompt:
            conversation.append(Message(role="system", content=agent.system_prompt))
        if current is None or not (agent.memory_enabled and self.memory.enabled):
            conversation.extend(messages)
            return conversation

        mem_start = time.monotonic()
        conversation.extend(
            await self._recall(
                messages, current, agent.id, ctx, agent.routing, tools=list(agent.tools)
            )
        )
        result.metrics.memory_latency_ms += _elapsed_ms(mem_start)
        return conversation

    async def _recall(
        self,
        messages: list[Message],
        current: Message,
        agent_id: str,
        ctx: ExecutionContext,
        routing: RoutingConfig | None,
        *,
        tools: list[ToolDefinition] | None = None,
    ) -> list[Message]:
        """Caller messages with memory facts and earlier turns worked in.

        Caller system messages lead, then the assembled memory, then every
        other caller message in its original order. The budget is the
        routed model's context window times ``context_window_ratio``.
        """
        lookup = CompletionRequest(messages=[current], tools=list(tools or []))
        decision = self.router.route(lookup, routing)
        budget = int(self._context_window(decision) * self.config.memory.context_window_ratio)
        assembled = await self.memory.build_context(
            agent_id,
            ctx.session_id,
            current.content,
            budget,
            conversation=[m for m in messages if m.role != "system"],
        )
        self._emit(
            AIEventType.MEMORY_ACCESSED,
            ctx.request_id,
            ctx,
            metadata={"operation": "read", "messages": len(assembled), "budget": budget},
        )
        return [m for m in messages if m.role == "system"] + assembled

    def _context_window(self, decision: RoutingDecision) -> int:
        entry = self.registry.get(decision.provider)
        info = entry.model(decision.model) if entry else None
        return info.context_window if info else 8_192

    async def _run_tool(self, call: ToolCall, ctx: ExecutionContext) -> ToolResult:
        try:
            tool_result = await self.tools.execute(call, ctx)
        except Exception as exc:
            logger.exception("Tool executor failed on %s", call.name)
            tool_result = ToolResult(
                tool_call_id=call.id,
                name=call.name,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        self._emit(
            AIEventType.TOOL_EXECUTED,
            ctx.request_id,
            ctx,
            latency_ms=tool_result.latency_ms,
            success=tool_result.success,
            error=tool_result.error,
            metadata={"tool": call.name, "tool_call_id": call.id},
        )
        return tool_result

    async def _remember_run(
        self,
        agent: AgentConfig,
        ctx: ExecutionContext,
        current: Message | None,
        response: CompletionResponse,
        result: ExecutionResult,
    ) -> None:
        if not (agent.memory_enabled and self.memory.enabled) or current is None:
            return
        mem_start = time.monotonic()
        updates = [
            self.memory.add_to_short_term(agent.id, ctx.session_id, current),
            self.memory.add_to_short_term(
                agent.id, ctx.session_id, Message(role="assistant", content=response.content)
            ),
        ]
        if self.config.memory.long_term_enabled:
            updates.append(
                await self.memory.store_long_term(
                    agent.id,
                    f"User: {current.content}\nAssistant: {response.content}",
                    MemoryType.EPISODIC,
                    importance=0.3,
                    session_id=ctx.session_id,
                    user_id=ctx.user_id,
                    source="conversation",
                )
            )
        result.memory_updates.extend(updates)
        result.metrics.memory_latency_ms += _elapsed_ms(mem_start)
        self._emit(
            AIEventType.MEMORY_ACCESSED,
            ctx.request_id,
            ctx,
            metadata={"operation": "write", "entries": len(updates)},
        )

    # -- introspection --------------------------------------------------------

    def list_providers(self) -> list[ProviderType]:
        """Registered and enabled providers, by priority."""
        return [e.type for e in self.registry.entries() if e.config.enabled]

    def provider_statuses(self) -> list[ProviderStatus]:
        return self.registry.statuses()

    def get_models(self) -> list[ModelInfo]:
        return self.registry.models()

    def metrics(self) -> AIMetrics:
        """Aggregate metrics with live circuit states."""
        states = {e.type: e.breaker.state for e in self.registry.entries()}
        if self._metrics is None:
            return AIMetrics()
        return self._metrics.snapshot(states)

    # -- pipeline stages ------------------------------------------------------

    def _prepare(
        self,
        request: CompletionRequest,
        request_id: str,
        context: ExecutionContext | None,
    ) -> CompletionRequest:
        """Run input safety and fill request defaults."""
        if self.safety.enabled:
            results = self.safety.validate_request(request)
            blocking = self.safety.get_blocking(results)
            if blocking is not None:
                self._safety_violation(blocking, "input", request_id, context)
                raise AIError(
                    f"Request blocked by safety check: {blocking.reason}",
                    ErrorCode.SAFETY_VIOLATION,
                    retryable=False,
                    metadata={"stage": "input", "check": blocking.to_dict()},
                )
            for warning in (r for r in results if r.offending):
                logger.warning("Input safety warning (%s): %s", warning.check, warning.reason)
            request = self.safety.prepare_request(request)

        defaults = self.config.defaults
        if request.temperature is None:
            request = replace(request, temperature=defaults.temperature)
        if request.max_tokens is None:
            request = replace(request, max_tokens=defaults.max_tokens)
        return request

    async def _with_memory(
        self,
        request: CompletionRequest,
        context: ExecutionContext | None,
        routing: RoutingConfig | None,
    ) -> CompletionRequest:
        if context is None or not self.memory.enabled:
            return request
        current = _last_user_message(request.messages)
        if current is None:
            return request
        messages = await self._recall(
            request.messages, current, context.agent_id, context, routing, tools=request.tools
        )
        return replace(request, messages=messages)

    def _decide(
        self,
        request: CompletionRequest,
        request_id: str,
        context: ExecutionContext | None,
        routing: RoutingConfig | None,
    ) -> RoutingDecision:
        decision = self.router.route(request, routing)
        self._emit(
            AIEventType.ROUTING_DECISION,
            request_id,
            context,
            provider=decision.provider,
            model=decision.model,
            metadata=decision.to_dict(),
        )
        preferred = self.router.preferred_provider(routing)
        skipped = next((s for s in decision.skipped if s.provider == preferred), None)
        if skipped is not None:
            logger.warning(
                "Primary provider %s unavailable (%s); using %s",
                preferred,
                skipped.reason,
                decision.provider,
            )
            self._emit(
                AIEventType.PROVIDER_FALLBACK,
                request_id,
                context,
                provider=decision.provider,
                model=decision.model,
                metadata={
                    "from": skipped.provider.value,
                    "to": decision.provider.value,
                    "reason": skipped.reason,
                },
            )
        return decision

    async def _attempt(
        self,
        decision: RoutingDecision,
        request: CompletionRequest,
        request_id: str,
        context: ExecutionContext | None,
        invoke: Invoke,
        *,
        can_fall_back: Callable[[], bool] = lambda: True,
        retry: bool = True,
    ) -> CompletionResponse:
        """Walk the decision's candidates until one succeeds.

        Raises:
            AIError: A fatal code at once, any failure once streaming
                output was delivered, else ``NO_AVAILABLE_PROVIDERS`` when
                the candidates are exhausted.
        """
        tokens = estimate_request_tokens(request)
        attempted: list[dict[str, str]] = []
        last_error: AIError | None = None
        previous: str | None = None
        min_context = 0

        for provider, model in decision.candidates():
            entry = self.registry.get(provider)
            info = entry.model(model) if entry else None
            if min_context and (info is None or info.context_window <= min_context):
                continue
            try:
                entry = self.registry.acquire(provider, tokens)
            except AIError as exc:
                logger.info("Skipping %s: %s", provider, exc)
                last_error = exc
                previous = previous or f"{provider.value}/{model}"
                attempted.append(
                    {"provider": provider.value, "model": model, "error": exc.code.value}
                )
                continue

            if previous is not None:
                self._emit(
                    AIEventType.PROVIDER_FALLBACK,
                    request_id,
                    context,
                    provider=provider,
                    model=model,
                    metadata={
                        "from": previous,
                        "to": f"{provider.value}/{model}",
                        "reason": last_error.code.value if last_error else "unavailable",
                    },
                )

            attempt_start = time.monotonic()
            try:
                response = await self._call(entry, model, invoke, retry=retry)
            except AIError as exc:
                self.registry.record_outcome(provider, False, _elapsed_ms(attempt_start), exc)
                last_error = exc
                previous = f"{provider.value}/{model}"
                attempted.append(
                    {"provider": provider.value, "model": model, "error": exc.code.value}
                )
                if exc.is_fatal or not can_fall_back():
                    raise
                if exc.code == ErrorCode.CONTEXT_LENGTH_EXCEEDED:
                    min_context = max(min_context, info.context_window if info else 0)
                elif not (exc.retryable or exc.is_provider_failure):
                    raise
                logger.warning("Provider %s failed (%s); trying next candidate", provider, exc.code)
                continue
            except BaseException:
                # Cancellation and unexpected errors free the slot without a failure.
                self.registry.release(provider)
                raise

            self.registry.record_outcome(provider, True, response.latency_ms)
            return response

        raise AIError(
            "All providers failed" + (f"; last error: {last_error}" if last_error else ""),
            ErrorCode.NO_AVAILABLE_PROVIDERS,
            metadata={
                "attempted": attempted,
                "last_error": last_error.to_dict() if last_error else None,
            },
        )

    async def _call(
        self, entry: ProviderEntry, model: str, invoke: Invoke, *, retry: bool
    ) -> CompletionResponse:
        """One provider call under its timeout, with optional same-provider retries."""
        timeout = entry.config.timeout or self.config.defaults.timeout

        async def once() -> CompletionResponse:
            try:
                return await asyncio.wait_for(invoke(entry, model), timeout)
            except TimeoutError:
                raise AIError(
                    f"{entry.type.value} did not respond within {timeout}s",
                    ErrorCode.TIMEOUT,
                    provider=entry.type,
                ) from None
            except (KeyError, TypeError, ValueError) as exc:
                raise AIError(
                    f"Malformed response from {entry.type.value}: {exc}",
                    ErrorCode.PROVIDER_ERROR,
                    provider=entry.type,
                ) from exc

        retries = entry.config.max_retries
        if retries is None:
            retries = self.config.defaults.max_retries
        if retry and retries > 0:
            return await RetryHandler(retries).execute(once)
        return await once()

    def _check_output(
        self,
        response: CompletionResponse,
        request_id: str,
        context: ExecutionContext | None,
    ) -> CompletionResponse:
        """Validate, redact, and truncate the response."""
        if not self.safety.enabled:
            return response
        results: list[SafetyCheckResult] = self.safety.validate_response(response)
        blocking = self.safety.get_blocking(results)
        if blocking is not None:
            self._safety_violation(blocking, "output", request_id, context, response.provider)
            raise AIError(
                f"Response blocked by safety check: {blocking.reason}",
                ErrorCode.SAFETY_VIOLATION,
                provider=response.provider,
                retryable=False,
                metadata={"stage": "output", "check": blocking.to_dict()},
            )
        content = self.safety.finalize_output(response.content)
        if content != response.content:
            response = response.with_content(content)
        return replace(response, safety_checks=results)

    def _remember_turn(
        self,
        request: CompletionRequest,
        response: CompletionResponse,
        context: ExecutionContext | None,
    ) -> None:
        if context is None or not self.memory.enabled:
            return
        user = _last_user_message(request.messages)
        written: list[MemoryEntry] = []
        if user is not None:
            written.append(
                self.memory.add_to_short_term(context.agent_id, context.session_id, user)
            )
        written.append(
            self.memory.add_to_short_term(
                context.agent_id,
                context.session_id,
                Message(role="assistant", content=response.content),
            )
        )
        self._emit(
            AIEventType.MEMORY_ACCESSED,
            context.request_id,
            context,
            metadata={"operation": "write", "entries": len(written)},
        )

    # -- events ---------------------------------------------------------------

    def _emit(
        self,
        event_type: AIEventType,
        request_id: str | None,
        context: ExecutionContext | None,
        **fields: Any,
    ) -> None:
        self.events.emit(
            AIEvent(
                type=event_type,
                request_id=request_id,
                agent_id=context.agent_id if context else None,
                user_id=context.user_id if context else None,
                session_id=context.session_id if context else None,
                **fields,
            )
        )

    def _finish(
        self,
        request_id: str,
        context: ExecutionContext | None,
        response: CompletionResponse,
        start: float,
    ) -> None:
        self._trace(request_id, "completed on %s/%s", response.provider, response.model)
        self._emit(
            AIEventType.REQUEST_COMPLETED,
            request_id,
            context,
            provider=response.provider,
            model=response.model,
            latency_ms=float(response.latency_ms if not response.cached else _elapsed_ms(start)),
            usage=response.usage if not response.cached else UsageInfo(),
            success=True,
            metadata={"cached": response.cached, "total_ms": _elapsed_ms(start)},
        )

    def _fail(
        self,
        request_id: str,
        context: ExecutionContext | None,
        error: AIError,
        start: float,
    ) -> None:
        self._trace(request_id, "failed with %s", error.code)
        self._emit(
            AIEventType.REQUEST_FAILED,
            request_id,
            context,
            provider=error.provider,
            latency_ms=float(_elapsed_ms(start)),
            success=False,
            error=str(error),
            metadata={"code": error.code.value},
        )

    def _safety_violation(
        self,
        result: SafetyCheckResult,
        stage: str,
        request_id: str,
        context: ExecutionContext | None,
        provider: ProviderType | None = None,
    ) -> None:
        logger.warning("Safety %s violation (%s): %s", stage, result.check, result.reason)
        self._emit(
            AIEventType.SAFETY_VIOLATION,
            request_id,
            context,
            provider=provider,
            success=False,
            error=result.reason,
            metadata={"stage": stage, **result.to_dict()},
        )

    def _registry_event(
        self, event_type: AIEventType, provider: ProviderType, metadata: dict[str, Any]
    ) -> None:
        if event_type == AIEventType.CIRCUIT_OPENED:
            logger.info("Circuit opened for %s", provider)
        elif event_type == AIEventType.CIRCUIT_CLOSED:
            logger.info("Circuit closed for %s", provider)
        self._emit(event_type, None, None, provider=provider, metadata=metadata)

    def _trace(self, request_id: str, message: str, *args: Any) -> None:
        if self.config.observability.tracing_enabled:
            logger.debug("[%s] " + message, request_id, *args)
