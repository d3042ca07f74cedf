"""Configuration management for Switchboard.

Handles provider credentials and per-provider limits, routing policy,
safety thresholds, memory sizing, observability, the response cache,
request defaults, and circuit breaker tuning. Configuration is loaded
from a TOML file (~/.switchboard/config.toml) with environment variable
overrides for API keys and log level.

Every section is a dataclass with working defaults, so a ``ServiceConfig()``
built in code (tests, embedding applications) needs no file at all.

Typical usage::

    from switchboard.config import load_config

    config = load_config()
    config.routing.mode            # RoutingMode.BALANCED
    config.providers["openai"]     # ProviderConfig(...)
    config.active_providers()      # enabled providers with credentials
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from switchboard.types import ModelFeature, ProviderType, RoutingMode

if TYPE_CHECKING:
    from switchboard.models import AIEvent

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".switchboard"
CONFIG_PATH = APP_DIR / "config.toml"
MEMORY_DIR = APP_DIR / "memory"

LOG_LEVEL_ENV = "SWITCHBOARD_LOG_LEVEL"

# Env var name -> provider. Later entries win when both are set.
_ENV_VAR_MAP: dict[str, ProviderType] = {
    "GROQ_API_KEY": ProviderType.GROQ,
    "ANTHROPIC_API_KEY": ProviderType.ANTHROPIC,
    "OPENAI_API_KEY": ProviderType.OPENAI,
    "GEMINI_API_KEY": ProviderType.GOOGLE,
    "GOOGLE_API_KEY": ProviderType.GOOGLE,
    "XAI_API_KEY": ProviderType.XAI,
    "OPENROUTER_API_KEY": ProviderType.OPENROUTER,
}

# Reverse: provider -> canonical env var name (for help text).
_PROVIDER_ENV_MAP: dict[ProviderType, str] = {
    ProviderType.GROQ: "GROQ_API_KEY",
    ProviderType.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderType.OPENAI: "OPENAI_API_KEY",
    ProviderType.GOOGLE: "GOOGLE_API_KEY",
    ProviderType.XAI: "XAI_API_KEY",
    ProviderType.OPENROUTER: "OPENROUTER_API_KEY",
}

EventCallback = Callable[["AIEvent"], Any]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    """Client-side request budget for one provider.

    Attributes:
        requests_per_minute: Sliding one-minute request cap.
        tokens_per_minute: Sliding one-minute token cap.
        requests_per_day: Sliding 24-hour request cap.
    """

    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None
    requests_per_day: int | None = None


@dataclass
class ProviderConfig:
    """Static configuration for one backend.

    Attributes:
        type: Which backend this configures.
        api_key: Credential. Not required for ``local``.
        base_url: Override for the backend's default endpoint.
        default_model: Preferred model when the router has a tie.
        timeout: Per-call timeout in seconds.
        max_retries: Same-provider retries before falling back; None uses
            ``defaults.max_retries``.
        enabled: Disabled providers are never routed to.
        priority: Tie-breaker in balanced mode; lower is preferred.
        rate_limit: Optional client-side request budget.
        headers: Extra HTTP headers sent with every call.
    """

    type: ProviderType
    api_key: str = ""
    base_url: str | None = None
    default_model: str | None = None
    timeout: float = 60.0
    max_retries: int | None = None
    enabled: bool = True
    priority: int = 100
    rate_limit: RateLimitConfig | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        """Whether the provider can authenticate (``local`` needs no key)."""
        return bool(self.api_key) or self.type == ProviderType.LOCAL


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@dataclass
class TaskRoute:
    """Preferred backend for one task type.

    Attributes:
        provider: Backend tried first for this task type.
        model: Model on that backend; the router picks one when unset.
        fallback: Backends tried next, in order.
    """

    provider: ProviderType
    model: str | None = None
    fallback: list[ProviderType] = field(default_factory=list)


@dataclass
class BalancedWeights:
    """Weights for balanced-mode scoring. Normalized at use."""

    latency: float = 1.0
    cost: float = 1.0
    error_rate: float = 1.0


@dataclass
class RoutingConfig:
    """Routing policy.

    Attributes:
        mode: Ordering policy for candidates.
        primary_provider: First choice in ``custom`` mode.
        fallback_chain: Ordered fallbacks in ``custom`` mode.
        task_type_routing: Task type -> preferred backend, applied in
            every mode.
        max_latency_ms: Soft latency ceiling.
        max_cost_per_request: Soft cost ceiling in USD.
        preferred_models: Restrict candidates to these model ids.
        exclude_models: Model ids or provider names to leave out.
        require_features: Features every candidate must support.
        weights: Balanced-mode weights.
        max_alternatives: Fallback candidates kept on a decision.
    """

    mode: RoutingMode = RoutingMode.BALANCED
    primary_provider: ProviderType | None = None
    fallback_chain: list[ProviderType] = field(default_factory=list)
    task_type_routing: dict[str, TaskRoute] = field(default_factory=dict)
    max_latency_ms: float | None = None
    max_cost_per_request: float | None = None
    preferred_models: list[str] = field(default_factory=list)
    exclude_models: list[str] = field(default_factory=list)
    require_features: list[ModelFeature] = field(default_factory=list)
    weights: BalancedWeights = field(default_factory=BalancedWeights)
    max_alternatives: int = 5


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


@dataclass
class InputValidationConfig:
    """Checks applied to user and tool messages before routing."""

    max_length: int = 10_000
    detect_prompt_injection: bool = True
    detect_jailbreak: bool = True
    sanitize_html: bool = True
    block_patterns: list[str] = field(default_factory=list)


@dataclass
class OutputValidationConfig:
    """Checks applied to completions before they reach the caller."""

    max_length: int = 10_000
    detect_hallucination: bool = False
    detect_pii: bool = True
    redact_sensitive: bool = True


@dataclass
class ContentFilterConfig:
    """Topic categories screened on input and output.

    Attributes:
        categories: Enabled category names. Known categories are
            ``hate``, ``harassment``, ``violence``, ``sexual``,
            ``self_harm``, ``dangerous``, ``financial_advice``,
            ``medical_advice``, and ``legal_advice``.
    """

    categories: list[str] = field(
        default_factory=lambda: ["hate", "violence", "self_harm", "dangerous"]
    )


@dataclass
class RiskThresholds:
    """Limits for monetary actions, in TON."""

    max_transaction_value_ton: float = 1000.0
    max_daily_transactions_ton: float = 5000.0
    require_confirmation_above: float = 100.0
    require_multi_sig_above: float = 1000.0


@dataclass
class SafetyConfig:
    """Safety policy."""

    enabled: bool = True
    input: InputValidationConfig = field(default_factory=InputValidationConfig)
    output: OutputValidationConfig = field(default_factory=OutputValidationConfig)
    content_filter: ContentFilterConfig = field(default_factory=ContentFilterConfig)
    risk: RiskThresholds = field(default_factory=RiskThresholds)


# ---------------------------------------------------------------------------
# Memory, observability, cache, defaults, breaker
# ---------------------------------------------------------------------------


@dataclass
class MemoryConfig:
    """Memory sizing.

    Attributes:
        enabled: Whether the service reads and writes memory.
        short_term_capacity: Turns kept per (agent, session).
        long_term_enabled: Whether turns are also written to the store.
        vector_search: Rank by embedding similarity when embeddings exist.
        context_window_ratio: Share of the model context window given to
            assembled memory context.
        storage_dir: Directory for the JSON memory store. In-memory when
            unset.
    """

    enabled: bool = True
    short_term_capacity: int = 50
    long_term_enabled: bool = False
    vector_search: bool = False
    context_window_ratio: float = 0.3
    storage_dir: Path | None = None


@dataclass
class ObservabilityConfig:
    """Logging and event delivery.

    Attributes:
        enabled: Whether events are emitted at all.
        log_level: Level applied by the CLI's logging setup.
        metrics_enabled: Whether events feed the metrics collector.
        tracing_enabled: Whether request ids are attached to log records.
        event_callback: Sink called once per event. Not read from TOML.
    """

    enabled: bool = True
    log_level: str = "WARNING"
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    event_callback: EventCallback | None = field(default=None, repr=False, compare=False)


class CacheStrategy(StrEnum):
    """Eviction policy for the response cache."""

    LRU = "lru"
    LFU = "lfu"


@dataclass
class CacheConfig:
    """Response cache."""

    enabled: bool = False
    ttl_seconds: float = 300.0
    max_size: int = 256
    strategy: CacheStrategy = CacheStrategy.LRU


@dataclass
class DefaultsConfig:
    """Request defaults used when a request or provider leaves them unset."""

    temperature: float = 0.7
    max_tokens: int = 1024
    timeout: float = 60.0
    max_retries: int = 0


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker tuning, shared by every provider.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        window_size: Outcomes kept for the rolling error rate.
        min_calls: Outcomes required before the error rate is evaluated.
        error_rate_threshold: Rolling error rate that opens the circuit.
        recovery_time_seconds: Cool-down before a half-open probe.
        half_open_max_calls: Concurrent probes allowed while half-open.
    """

    failure_threshold: int = 5
    window_size: int = 20
    min_calls: int = 10
    error_rate_threshold: float = 0.5
    recovery_time_seconds: float = 30.0
    half_open_max_calls: int = 1


@dataclass
class ServiceConfig:
    """Top-level configuration passed to ``AIService``.

    Attributes:
        providers: Per-backend configuration, keyed by provider type.
        routing: Routing policy.
        safety: Safety policy.
        memory: Memory sizing.
        observability: Logging and event delivery.
        cache: Response cache.
        defaults: Request defaults.
        circuit_breaker: Breaker tuning.
        env_providers: Providers whose keys came from environment
            variables; never written back to disk.
    """

    providers: dict[ProviderType, ProviderConfig] = field(default_factory=dict)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    env_providers: set[ProviderType] = field(default_factory=set, repr=False)

    def active_providers(self) -> list[ProviderConfig]:
        """Return enabled providers that have credentials, by priority."""
        active = [p for p in self.providers.values() if p.enabled and p.has_credentials]
        return sorted(active, key=lambda p: (p.priority, p.type.value))

    def get_provider_key(self, provider: ProviderType | str) -> str | None:
        """Get the API key for a provider.

        Checks ``providers`` first, then the provider's environment
        variable. The env fallback covers configs built in code that
        bypass ``load_config()``.

        Args:
            provider: Provider type or its string value.

        Returns:
            The API key, or None if not configured.
        """
        ptype = ProviderType(provider)
        cfg = self.providers.get(ptype)
        if cfg and cfg.api_key:
            return cfg.api_key
        for env_var, mapped in _ENV_VAR_MAP.items():
            if mapped == ptype and os.environ.get(env_var):
                return os.environ[env_var]
        return None


# ---------------------------------------------------------------------------
# TOML loading
# ---------------------------------------------------------------------------


def _parse_enum(enum_cls: type[StrEnum], value: Any, key: str) -> Any:
    """Convert a TOML string to an enum member, naming the key on failure."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(
            f"Invalid value {value!r} for '{key}'. Expected one of: {allowed}."
        ) from None


def _apply_section(target: Any, data: dict[str, Any], section: str) -> None:
    """Copy scalar keys from a TOML table onto a dataclass.

    Unknown keys are logged and skipped. Nested tables are left to the
    caller.

    Args:
        target: Dataclass instance to update.
        data: Parsed TOML table.
        section: Dotted section name, for messages.
    """
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        if isinstance(value, dict):
            continue
        if key not in known:
            logger.warning("Ignoring unknown config key '%s.%s'", section, key)
            continue
        current = getattr(target, key)
        if isinstance(current, StrEnum):
            value = _parse_enum(type(current), value, f"{section}.{key}")
        elif isinstance(current, float) and isinstance(value, int):
            value = float(value)
        setattr(target, key, value)


def _parse_provider(name: str, data: dict[str, Any]) -> ProviderConfig:
    """Build a ProviderConfig from a ``[providers.<name>]`` table."""
    ptype = _parse_enum(ProviderType, name, "providers")
    cfg = ProviderConfig(type=ptype)
    _apply_section(cfg, data, f"providers.{name}")
    if "rate_limit" in data:
        cfg.rate_limit = RateLimitConfig()
        _apply_section(cfg.rate_limit, data["rate_limit"], f"providers.{name}.rate_limit")
    if "headers" in data:
        cfg.headers = {str(k): str(v) for k, v in data["headers"].items()}
    return cfg


def _parse_routing(data: dict[str, Any]) -> RoutingConfig:
    """Build a RoutingConfig from the ``[routing]`` table."""
    routing = RoutingConfig()
    scalars = {
        k: v
        for k, v in data.items()
        if k not in ("primary_provider", "fallback_chain", "require_features")
    }
    _apply_section(routing, scalars, "routing")
    if data.get("primary_provider"):
        routing.primary_provider = _parse_enum(
            ProviderType, data["primary_provider"], "routing.primary_provider"
        )
    routing.fallback_chain = [
        _parse_enum(ProviderType, p, "routing.fallback_chain")
        for p in data.get("fallback_chain", [])
    ]
    routing.require_features = [
        _parse_enum(ModelFeature, f, "routing.require_features")
        for f in data.get("require_features", [])
    ]
    if "weights" in data:
        _apply_section(routing.weights, data["weights"], "routing.weights")
    for task_type, route in data.get("task_type_routing", {}).items():
        key = f"routing.task_type_routing.{task_type}"
        routing.task_type_routing[task_type] = TaskRoute(
            provider=_parse_enum(ProviderType, route["provider"], f"{key}.provider"),
            model=route.get("model"),
            fallback=[
                _parse_enum(ProviderType, p, f"{key}.fallback") for p in route.get("fallback", [])
            ],
        )
    return routing


def _apply_toml(config: ServiceConfig, data: dict[str, Any]) -> None:
    """Apply parsed TOML data to a ServiceConfig instance.

    Args:
        config: ServiceConfig instance to populate.
        data: Parsed TOML dictionary.

    Raises:
        ValueError: If an enum-valued key holds an unknown value.
    """
    # --- Providers ---
    for name, table in data.get("providers", {}).items():
        provider = _parse_provider(name, table)
        config.providers[provider.type] = provider

    # --- Routing ---
    if "routing" in data:
        config.routing = _parse_routing(data["routing"])

    # --- Safety ---
    if "safety" in data:
        safety = data["safety"]
        _apply_section(config.safety, safety, "safety")
        for sub in ("input", "output", "content_filter", "risk"):
            if sub in safety:
                _apply_section(getattr(config.safety, sub), safety[sub], f"safety.{sub}")

    # --- Memory ---
    if "memory" in data:
        mem = dict(data["memory"])
        storage_dir = mem.pop("storage_dir", None)
        _apply_section(config.memory, mem, "memory")
        if storage_dir:
            config.memory.storage_dir = Path(storage_dir).expanduser()

    # --- Flat sections ---
    for section in ("observability", "cache", "defaults", "circuit_breaker"):
        if section in data:
            _apply_section(getattr(config, section), data[section], section)


def _apply_env_overrides(config: ServiceConfig) -> None:
    """Apply environment variable overrides to provider keys and log level.

    A key found only in the environment creates a provider entry with
    default settings.

    Args:
        config: ServiceConfig instance to update.
    """
    for env_var, ptype in _ENV_VAR_MAP.items():
        env_val = os.environ.get(env_var, "")
        if not env_val:
            continue
        if ptype not in config.providers:
            config.providers[ptype] = ProviderConfig(type=ptype)
        config.providers[ptype].api_key = env_val
        config.env_providers.add(ptype)

    log_level = os.environ.get(LOG_LEVEL_ENV, "")
    if log_level:
        config.observability.log_level = log_level.upper()


def load_config(path: Path | None = None) -> ServiceConfig:
    """Load configuration from file and environment.

    Resolution order for each provider API key:
        1. Provider environment variable (e.g. OPENAI_API_KEY)
        2. ``[providers.<type>].api_key`` in config.toml
        3. Empty string (provider is inactive)

    Args:
        path: Config file to read. Defaults to CONFIG_PATH.

    Returns:
        Populated ServiceConfig instance.

    Raises:
        ValueError: If the file holds an invalid enum value.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    config = ServiceConfig()
    target = path or CONFIG_PATH

    if target.exists():
        with open(target, "rb") as f:
            _apply_toml(config, tomllib.load(f))

    _apply_env_overrides(config)

    return config


# ---------------------------------------------------------------------------
# TOML writing
# ---------------------------------------------------------------------------


def _table_from(obj: Any, *, skip: tuple[str, ...] = ()) -> Any:
    """Build a tomlkit table from a dataclass's non-None scalar fields."""
    import tomlkit

    table = tomlkit.table()
    for f in fields(obj):
        if f.name in skip:
            continue
        value = getattr(obj, f.name)
        if value is None or isinstance(value, dict) or callable(value):
            continue
        if isinstance(value, StrEnum):
            value = value.value
        elif isinstance(value, Path):
            value = str(value)
        elif isinstance(value, list):
            value = [v.value if isinstance(v, StrEnum) else v for v in value]
        table.add(f.name, value)
    return table


def write_config(
    config: ServiceConfig,
    path: Path | None = None,
    *,
    env_providers: set[ProviderType] | None = None,
) -> None:
    """Serialize a ServiceConfig to TOML and write to disk.

    API keys sourced from environment variables are excluded. Only values
    set explicitly in the file or in code are persisted. If the file
    already exists, its permissions are preserved after write.

    Args:
        config: ServiceConfig instance to serialize.
        path: File path to write. Defaults to CONFIG_PATH.
        env_providers: Providers whose keys came from env vars. Defaults
            to ``config.env_providers``.
    """
    import tomlkit

    target = path or CONFIG_PATH
    env_provs = config.env_providers if env_providers is None else env_providers

    # Capture existing permissions before overwriting.
    existing_mode: int | None = None
    if target.exists():
        existing_mode = target.stat().st_mode & 0o777

    doc = tomlkit.document()

    # --- Providers ---
    providers_table = tomlkit.table(is_super_table=True)
    for ptype, pcfg in sorted(config.providers.items()):
        skip: tuple[str, ...] = ("type", "rate_limit")
        if ptype in env_provs or not pcfg.api_key:
            skip = (*skip, "api_key")
        table = _table_from(pcfg, skip=skip)
        if pcfg.headers:
            table.add("headers", dict(pcfg.headers))
        if pcfg.rate_limit is not None:
            table.add("rate_limit", _table_from(pcfg.rate_limit))
        providers_table.add(ptype.value, table)
    doc.add("providers", providers_table)

    # --- Routing ---
    routing_table = _table_from(config.routing, skip=("weights",))
    routing_table.add("weights", _table_from(config.routing.weights))
    if config.routing.task_type_routing:
        tasks = tomlkit.table(is_super_table=True)
        for task_type, route in sorted(config.routing.task_type_routing.items()):
            tasks.add(task_type, _table_from(route))
        routing_table.add("task_type_routing", tasks)
    doc.add("routing", routing_table)

    # --- Safety ---
    safety_table = _table_from(config.safety, skip=("input", "output", "content_filter", "risk"))
    for sub in ("input", "output", "content_filter", "risk"):
        safety_table.add(sub, _table_from(getattr(config.safety, sub)))
    doc.add("safety", safety_table)

    # --- Flat sections ---
    for section in ("memory", "observability", "cache", "defaults", "circuit_breaker"):
        doc.add(section, _table_from(getattr(config, section)))

    # Write: parent dirs, then file.
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(tomlkit.dumps(doc), encoding="utf-8")

    # Restore permissions if file existed before.
    if existing_mode is not None:
        target.chmod(existing_mode)


def ensure_dirs() -> None:
    """Create application directories if they don't exist."""
    APP_DIR.mkdir(parents=True, exist_ok=True)
    MEMORY_DIR.mkdir(parents=True, exist_ok=True)
