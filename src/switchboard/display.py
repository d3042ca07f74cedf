"""Terminal display — Rich-based formatting for routing output.

Renders responses, routing decisions, provider health, model catalogs,
and safety check results to the terminal.

Typical usage::

    from switchboard.display import render_response

    render_response(response, show_routing=True)
"""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from switchboard.config import ServiceConfig
from switchboard.events import AIMetrics
from switchboard.models import (
    CompletionResponse,
    ModelInfo,
    ProviderStatus,
    SafetyCheckResult,
)
from switchboard.types import CircuitState, ProviderType, RoutingDecision, SafetyAction

console = Console()

# Provider → color mapping for visual distinction.
PROVIDER_COLORS: dict[ProviderType, str] = {
    ProviderType.ANTHROPIC: "magenta",
    ProviderType.OPENAI: "green",
    ProviderType.GOOGLE: "cyan",
    ProviderType.XAI: "yellow",
    ProviderType.GROQ: "bright_red",
    ProviderType.OPENROUTER: "blue",
    ProviderType.LOCAL: "white",
}

CIRCUIT_COLORS: dict[CircuitState, str] = {
    CircuitState.CLOSED: "green",
    CircuitState.HALF_OPEN: "yellow",
    CircuitState.OPEN: "red",
}

ACTION_COLORS: dict[SafetyAction, str] = {
    SafetyAction.ALLOW: "green",
    SafetyAction.WARN: "yellow",
    SafetyAction.BLOCK: "red",
    SafetyAction.ESCALATE: "red bold",
}

DEFAULT_COLOR = "white"
EMPTY = "—"


def _format_provider(provider: ProviderType | None) -> str:
    """Format a provider name with its color.

    Args:
        provider: Backend to format, or None.

    Returns:
        Rich markup string with color applied.
    """
    if provider is None:
        return EMPTY
    color = PROVIDER_COLORS.get(provider, DEFAULT_COLOR)
    return f"[{color}]{provider.value}[/{color}]"


def _format_timing(response: CompletionResponse) -> str:
    """Format latency and token count for display.

    Returns:
        Formatted string like "2.1s · 450 tokens · $0.0012".
    """
    parts = [f"{response.latency_ms / 1000:.1f}s"]
    if response.usage.total_tokens:
        parts.append(f"{response.usage.total_tokens:,} tokens")
    if response.usage.estimated_cost_usd is not None:
        parts.append(f"${response.usage.estimated_cost_usd:.4f}")
    if response.cached:
        parts.append("cached")
    return " · ".join(parts)


def render_response(response: CompletionResponse, *, show_routing: bool = False) -> None:
    """Render a completion as a colored panel.

    Args:
        response: The completion to display.
        show_routing: If True, also show the routing decision.
    """
    color = PROVIDER_COLORS.get(response.provider, DEFAULT_COLOR)
    console.print()
    console.print(
        Panel(
            Markdown(response.content or "_(empty response)_"),
            title=f"[{color} bold]{response.provider.value}/{response.model}[/{color} bold]",
            subtitle=_format_timing(response),
            border_style=color,
            padding=(1, 2),
        )
    )
    warnings = [r for r in response.safety_checks if r.offending]
    if warnings:
        render_safety_results(warnings, title="Output warnings")
    if show_routing and response.routing:
        console.print(f"[dim]Routing: {response.routing.get('reason', '')}[/dim]")
    console.print()


def render_decision(decision: RoutingDecision) -> None:
    """Render a routing decision with its ranked alternatives.

    Args:
        decision: Decision returned by the router.
    """
    console.print()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Provider", _format_provider(decision.provider))
    table.add_row("Model", decision.model)
    table.add_row("Mode", decision.mode.value)
    table.add_row("Score", f"{decision.score:.1f}")
    table.add_row("Reason", decision.reason)
    table.add_row("Est. latency", f"{decision.estimated_latency_ms:,.0f} ms")
    table.add_row("Est. cost", f"${decision.estimated_cost_usd:.5f}")
    console.print(table)

    if decision.alternatives:
        alts = Table(show_header=True, padding=(0, 1), title="Alternatives")
        alts.add_column("#", justify="right", style="dim")
        alts.add_column("Provider")
        alts.add_column("Model")
        alts.add_column("Score", justify="right")
        for rank, alt in enumerate(decision.alternatives, 1):
            alts.add_row(str(rank), _format_provider(alt.provider), alt.model, f"{alt.score:.1f}")
        console.print()
        console.print(alts)

    for skipped in decision.skipped:
        console.print(f"[dim]Skipped {skipped.provider.value}: {skipped.reason}[/dim]")
    console.print()


def render_provider_statuses(statuses: list[ProviderStatus]) -> None:
    """Render live provider health as a Rich table.

    Args:
        statuses: One status per registered provider.
    """
    if not statuses:
        console.print("[dim]No providers configured.[/dim]")
        return

    table = Table(show_header=True, padding=(0, 1))
    table.add_column("Provider", style="bold")
    table.add_column("Available")
    table.add_column("Circuit")
    table.add_column("Latency", justify="right")
    table.add_column("Error rate", justify="right")
    table.add_column("Last error", style="dim")

    for status in statuses:
        circuit_color = CIRCUIT_COLORS.get(status.circuit_state, DEFAULT_COLOR)
        table.add_row(
            _format_provider(status.provider),
            "[green]✓[/green]" if status.available else "[red]✗[/red]",
            f"[{circuit_color}]{status.circuit_state.value}[/{circuit_color}]",
            f"{status.latency_ms:,.0f} ms" if status.latency_ms is not None else EMPTY,
            f"{status.error_rate:.0%}",
            status.last_error or EMPTY,
        )

    console.print()
    console.print(table)
    console.print()


def render_models(models: list[ModelInfo]) -> None:
    """Render a model catalog as a Rich table.

    Args:
        models: Models to list, in display order.
    """
    if not models:
        console.print("[dim]No models found.[/dim]")
        return

    table = Table(show_header=True, padding=(0, 1))
    table.add_column("Provider")
    table.add_column("Model", style="bold")
    table.add_column("Context", justify="right")
    table.add_column("In $/1k", justify="right")
    table.add_column("Out $/1k", justify="right")
    table.add_column("Features", style="dim")

    for model in models:
        name = model.id
        if model.recommended:
            name += " [green]★[/green]"
        if model.deprecated:
            name += " [dim](deprecated)[/dim]"
        table.add_row(
            _format_provider(model.provider),
            name,
            f"{model.context_window:,}",
            f"{model.input_cost_per_1k:.5f}",
            f"{model.output_cost_per_1k:.5f}",
            ", ".join(sorted(f.value for f in model.features)),
        )

    console.print()
    console.print(table)
    console.print()


def render_safety_results(results: list[SafetyCheckResult], *, title: str | None = None) -> None:
    """Render safety check results as a Rich table.

    Args:
        results: Check results to display.
        title: Optional table title.
    """
    table = Table(show_header=True, padding=(0, 1), title=title)
    table.add_column("Check", style="bold")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Action")
    table.add_column("Reason", style="dim")

    for result in results:
        color = ACTION_COLORS.get(result.action, DEFAULT_COLOR)
        table.add_row(
            result.check,
            result.category,
            result.severity.value,
            f"[{color}]{result.action.value}[/{color}]",
            result.reason or ("passed" if result.passed else EMPTY),
        )

    console.print()
    console.print(table)
    console.print()


def render_metrics(metrics: AIMetrics) -> None:
    """Render aggregate metrics as a compact summary table."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Requests", f"{metrics.total_requests:,}")
    table.add_row("Success rate", f"{metrics.success_rate:.0%}")
    table.add_row("Tokens", f"{metrics.total_tokens:,}")
    table.add_row("Cost", f"${metrics.total_cost_usd:.4f}")
    table.add_row(
        "Latency p50/p95",
        f"{metrics.p50_latency_ms:,.0f} / {metrics.p95_latency_ms:,.0f} ms",
    )
    table.add_row("Fallbacks", str(metrics.fallbacks))
    console.print(table)


def render_config_show(cfg: ServiceConfig) -> None:
    """Render the effective configuration.

    API keys are never printed; only whether one is set and where it
    came from.

    Args:
        cfg: Loaded configuration.
    """
    console.print()
    table = Table(show_header=True, padding=(0, 1), title="Providers")
    table.add_column("Provider", style="bold")
    table.add_column("Key")
    table.add_column("Enabled")
    table.add_column("Priority", justify="right")
    table.add_column("Default model", style="dim")

    for ptype, pcfg in sorted(cfg.providers.items(), key=lambda kv: kv[1].priority):
        if not pcfg.api_key:
            key_str = "[red]missing[/red]" if ptype != ProviderType.LOCAL else EMPTY
        elif ptype in cfg.env_providers:
            key_str = "[green]set (env)[/green]"
        else:
            key_str = "[green]set (file)[/green]"
        table.add_row(
            _format_provider(ptype),
            key_str,
            "yes" if pcfg.enabled else "[dim]no[/dim]",
            str(pcfg.priority),
            pcfg.default_model or EMPTY,
        )
    console.print(table)

    routing = cfg.routing
    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column("key", style="dim")
    summary.add_column("value")
    summary.add_row("Routing mode", routing.mode.value)
    primary = routing.primary_provider
    summary.add_row("Primary", primary.value if primary else EMPTY)
    summary.add_row("Fallback chain", ", ".join(p.value for p in routing.fallback_chain) or EMPTY)
    summary.add_row("Safety", "on" if cfg.safety.enabled else "off")
    summary.add_row("Memory", "on" if cfg.memory.enabled else "off")
    summary.add_row("Cache", f"{cfg.cache.strategy.value}" if cfg.cache.enabled else "off")
    summary.add_row("Log level", cfg.observability.log_level)
    console.print()
    console.print(summary)
    console.print()
