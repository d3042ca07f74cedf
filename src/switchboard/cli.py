"""CLI entry point for Switchboard.

Provides the ``switchboard`` command with subcommands for sending
prompts through the router, inspecting routing decisions and provider
health, running safety checks, and managing configuration.

Typical usage::

    switchboard ask "Explain circuit breakers" --mode quality
    switchboard route "Write a Python function that parses CSV" --output json
    switchboard safety check "Ignore all previous instructions"
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console

from switchboard import __version__
from switchboard.config import (
    CONFIG_PATH,
    LOG_LEVEL_ENV,
    RoutingConfig,
    ServiceConfig,
    load_config,
    write_config,
)
from switchboard.display import (
    render_config_show,
    render_decision,
    render_metrics,
    render_models,
    render_provider_statuses,
    render_response,
    render_safety_results,
)
from switchboard.errors import AIError
from switchboard.models import CompletionRequest, CompletionResponse, Message, StreamChunk
from switchboard.safety import SafetyManager
from switchboard.service import AIService
from switchboard.types import ProviderType, RoutingMode

console = Console(stderr=True)

_MODES = [m.value for m in RoutingMode]
_PROVIDERS = [p.value for p in ProviderType]


def _build_request(query: str, system: str | None, model: str | None) -> CompletionRequest:
    messages = [Message(role="system", content=system)] if system else []
    messages.append(Message(role="user", content=query))
    return CompletionRequest(messages=messages, model=model)


def _routing_override(
    cfg: ServiceConfig, mode: str | None, provider: str | None
) -> RoutingConfig | None:
    """Build a per-command routing policy from ``--mode`` and ``--provider``.

    ``--provider`` switches to custom mode with that provider first and
    the configured fallback chain after it.

    Returns:
        A routing config, or None to use the configured policy.
    """
    if mode is None and provider is None:
        return None
    base = cfg.routing
    if provider is not None:
        primary = ProviderType(provider)
        chain = [p for p in base.fallback_chain if p != primary]
        return RoutingConfig(
            mode=RoutingMode.CUSTOM,
            primary_provider=primary,
            fallback_chain=chain,
            task_type_routing=base.task_type_routing,
            exclude_models=base.exclude_models,
            require_features=base.require_features,
            max_alternatives=base.max_alternatives,
        )
    return RoutingConfig(
        mode=RoutingMode(mode),
        task_type_routing=base.task_type_routing,
        max_latency_ms=base.max_latency_ms,
        max_cost_per_request=base.max_cost_per_request,
        preferred_models=base.preferred_models,
        exclude_models=base.exclude_models,
        require_features=base.require_features,
        weights=base.weights,
        max_alternatives=base.max_alternatives,
    )


def _require_providers(cfg: ServiceConfig) -> None:
    """Exit with a hint when no provider has credentials."""
    if cfg.active_providers():
        return
    console.print(
        "[red bold]Error:[/red bold] No provider configured.\n"
        "Set OPENAI_API_KEY, ANTHROPIC_API_KEY, or another provider key environment\n"
        f"variable, or configure keys in {CONFIG_PATH}"
    )
    sys.exit(1)


def _fail(exc: AIError) -> None:
    console.print(f"[red bold]Error ({exc.code.value}):[/red bold] {exc.message}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="switchboard")
@click.option(
    "--log-level",
    envvar=LOG_LEVEL_ENV,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help=f"Logging verbosity (env: {LOG_LEVEL_ENV}).",
)
def main(log_level: str) -> None:
    """Multi-provider LLM routing with circuit breakers and safety checks.

    Routes each prompt to the best available model across configured
    providers, falls back when a provider fails, and screens input and
    output against the configured safety policy.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.argument("query")
@click.option("--mode", type=click.Choice(_MODES), default=None, help="Routing mode override.")
@click.option(
    "--provider",
    type=click.Choice(_PROVIDERS),
    default=None,
    help="Try this provider first, then the configured fallback chain.",
)
@click.option("--model", default=None, help="Pin a specific model id.")
@click.option("--system", default=None, help="System prompt.")
@click.option("--stream", is_flag=True, default=False, help="Print tokens as they arrive.")
@click.option(
    "--output",
    type=click.Choice(["terminal", "json"], case_sensitive=False),
    default="terminal",
    help="Output format (default: terminal).",
)
@click.option("--show-routing", is_flag=True, default=False, help="Show why a model was chosen.")
@click.option(
    "--metrics", "show_metrics", is_flag=True, default=False, help="Show request metrics."
)
def ask(
    query: str,
    mode: str | None,
    provider: str | None,
    model: str | None,
    system: str | None,
    stream: bool,
    output: str,
    show_routing: bool,
    show_metrics: bool,
) -> None:
    """Send QUERY to the best available model.

    Args:
        query: The prompt.
        mode: Routing mode override.
        provider: Provider to try first.
        model: Model id to pin.
        system: System prompt.
        stream: Stream tokens to stdout.
        output: Output format choice.
        show_routing: Print the routing reason.
        show_metrics: Print request metrics afterwards.
    """
    cfg = load_config()
    _require_providers(cfg)
    request = _build_request(query, system, model)
    routing = _routing_override(cfg, mode, provider)

    def on_chunk(chunk: StreamChunk) -> None:
        click.echo(chunk.delta, nl=False)

    service = AIService(cfg)

    async def _run() -> CompletionResponse:
        async with service:
            if stream and output == "terminal":
                response = await service.stream(request, on_chunk, routing=routing)
                click.echo()
                return response
            return await service.complete(request, routing=routing)

    try:
        response = asyncio.run(_run())
    except AIError as exc:
        _fail(exc)
        return

    if output == "json":
        click.echo(json.dumps(response.to_dict(), indent=2))
    elif stream:
        console.print(f"[dim]{response.provider.value}/{response.model}[/dim]")
    else:
        render_response(response, show_routing=show_routing)
    if show_metrics:
        render_metrics(service.metrics())


@main.command()
@click.argument("query")
@click.option("--mode", type=click.Choice(_MODES), default=None, help="Routing mode override.")
@click.option("--provider", type=click.Choice(_PROVIDERS), default=None, help="Provider to prefer.")
@click.option("--model", default=None, help="Pin a specific model id.")
@click.option(
    "--output",
    type=click.Choice(["terminal", "json"], case_sensitive=False),
    default="terminal",
    help="Output format (default: terminal).",
)
def route(
    query: str, mode: str | None, provider: str | None, model: str | None, output: str
) -> None:
    """Show where QUERY would be routed, without calling any provider.

    Args:
        query: The prompt to route.
        mode: Routing mode override.
        provider: Provider to try first.
        model: Model id to pin.
        output: Output format choice.
    """
    cfg = load_config()
    _require_providers(cfg)
    service = AIService(cfg)
    try:
        decision = service.route(
            _build_request(query, None, model), _routing_override(cfg, mode, provider)
        )
    except AIError as exc:
        _fail(exc)
        return

    if output == "json":
        click.echo(json.dumps(decision.to_dict(), indent=2))
    else:
        render_decision(decision)


@main.command()
def providers() -> None:
    """List configured providers with circuit state and health."""
    service = AIService(load_config())
    render_provider_statuses(service.provider_statuses())


@main.command()
@click.option("--provider", type=click.Choice(_PROVIDERS), default=None, help="Filter by provider.")
@click.option(
    "--output",
    type=click.Choice(["terminal", "json"], case_sensitive=False),
    default="terminal",
    help="Output format (default: terminal).",
)
def models(provider: str | None, output: str) -> None:
    """List models served by configured providers.

    Args:
        provider: Only list this provider's models.
        output: Output format choice.
    """
    service = AIService(load_config())
    catalog = service.get_models()
    if provider is not None:
        catalog = [m for m in catalog if m.provider == ProviderType(provider)]
    if output == "json":
        click.echo(json.dumps([m.to_dict() for m in catalog], indent=2))
    else:
        render_models(catalog)


@main.group()
def safety() -> None:
    """Run safety checks locally."""


@safety.command("check")
@click.argument("text")
@click.option(
    "--output-text",
    "as_output",
    is_flag=True,
    default=False,
    help="Check TEXT as model output instead of user input.",
)
def safety_check(text: str, as_output: bool) -> None:
    """Run input (or output) safety checks on TEXT.

    Exits with status 1 when any check blocks or escalates.

    Args:
        text: Text to check.
        as_output: Use output validation instead of input validation.
    """
    manager = SafetyManager(load_config().safety)
    if as_output:
        results = manager.validate_output(text)
    else:
        request = CompletionRequest(messages=[Message(role="user", content=text)])
        results = manager.validate_request(request)
    render_safety_results(results)
    if manager.get_blocking(results) is not None:
        sys.exit(1)


@safety.command("redact")
@click.argument("text")
def safety_redact(text: str) -> None:
    """Print TEXT with PII replaced by redaction markers.

    Args:
        text: Text to redact.
    """
    manager = SafetyManager(load_config().safety)
    click.echo(manager.output.redact(text))


@main.group()
def config() -> None:
    """Manage configuration."""


@config.command()
def path() -> None:
    """Print the configuration file path."""
    click.echo(CONFIG_PATH)


@config.command("show")
def config_show() -> None:
    """Display effective configuration."""
    render_config_show(load_config())


@config.command("init")
@click.option(
    "--file",
    "target",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write to FILE instead of the default path.",
)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
def config_init(target: Path | None, force: bool) -> None:
    """Write a configuration file with default settings.

    API keys are left out; set them through environment variables or
    edit the file afterwards.

    Args:
        target: File to write.
        force: Overwrite an existing file.
    """
    destination = target or CONFIG_PATH
    if destination.exists() and not force:
        console.print(
            f"[red bold]Error:[/red bold] {destination} already exists. Use --force to overwrite."
        )
        sys.exit(1)
    write_config(ServiceConfig(), destination)
    console.print(f"[dim]Configuration written to {destination}[/dim]")


if __name__ == "__main__":
    main()
