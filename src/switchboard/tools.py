"""Tool execution for agent runs.

``AIService.execute_agent`` hands every tool call the model makes to a
``ToolExecutor``. ``DefaultToolExecutor`` maps tool names to plain Python
callables (sync or async) and turns their outcome into a ``ToolResult``;
a raising tool yields a failed result rather than aborting the run.

Typical usage::

    tools = DefaultToolExecutor()

    @tools.register("get_weather", description="Current weather for a city")
    async def get_weather(city: str) -> dict:
        ...

    agent = AgentConfig(id="helper", tools=tools.definitions())
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from switchboard.models import ExecutionContext, ToolCall, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

ToolFunction = Callable[..., Any]


class ToolExecutor(ABC):
    """Runs tool calls requested by a model."""

    @abstractmethod
    async def execute(self, tool_call: ToolCall, context: ExecutionContext) -> ToolResult:
        """Run one tool call.

        Args:
            tool_call: The call as the model requested it.
            context: Identity of the run making the call.

        Returns:
            ToolResult; failures are reported with ``success=False``.
        """
        ...


class DefaultToolExecutor(ToolExecutor):
    """Dispatch tool calls to registered Python callables.

    Callables receive the call's arguments as keyword arguments. A
    callable that declares a ``context`` parameter also receives the
    ``ExecutionContext``.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolFunction] = {}
        self._definitions: dict[str, ToolDefinition] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def add(
        self,
        name: str,
        func: ToolFunction,
        *,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> ToolDefinition:
        """Register ``func`` under ``name`` and return its definition."""
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        definition = ToolDefinition(
            name=name,
            description=description or (inspect.getdoc(func) or "").split("\n")[0],
        )
        if parameters is not None:
            definition.parameters = parameters
        self._tools[name] = func
        self._definitions[name] = definition
        return definition

    def register(
        self,
        name: str | None = None,
        *,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> Callable[[ToolFunction], ToolFunction]:
        """Decorator form of ``add``; the function name is the default tool name."""

        def decorator(func: ToolFunction) -> ToolFunction:
            self.add(name or func.__name__, func, description=description, parameters=parameters)
            return func

        return decorator

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    async def execute(self, tool_call: ToolCall, context: ExecutionContext) -> ToolResult:
        start = time.monotonic()
        func = self._tools.get(tool_call.name)
        if func is None:
            return ToolResult(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                success=False,
                error=f"Unknown tool '{tool_call.name}'",
            )

        arguments = tool_call.arguments
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments else {}
            except json.JSONDecodeError as exc:
                return ToolResult(
                    tool_call_id=tool_call.id,
                    name=tool_call.name,
                    success=False,
                    error=f"Invalid JSON arguments: {exc}",
                )

        kwargs = dict(arguments)
        if "context" in inspect.signature(func).parameters:
            kwargs["context"] = context
        try:
            output = func(**kwargs)
            if inspect.isawaitable(output):
                output = await output
        except Exception as exc:
            logger.exception("Tool %s failed", tool_call.name)
            return ToolResult(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        return ToolResult(
            tool_call_id=tool_call.id,
            name=tool_call.name,
            success=True,
            output=output,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
