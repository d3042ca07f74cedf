"""Routing decision engine.

Turns a completion request into a ``RoutingDecision``: which provider and
model should serve it, plus a ranked list of alternatives for fallback.
Routing is pure bookkeeping over the registry's static model metadata and
live health figures; it never calls a provider.

Typical usage::

    router = AIRouter(registry, config.routing)
    decision = router.route(request)
    for provider, model in decision.candidates():
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from switchboard.analysis import TaskAnalysis, TaskAnalyzer, TaskType
from switchboard.config import RoutingConfig, TaskRoute
from switchboard.errors import AIError
from switchboard.models import CompletionRequest, ModelInfo
from switchboard.pricing import estimate_cost, estimate_latency, expected_output_tokens
from switchboard.providers.registry import ProviderEntry, ProviderRegistry
from switchboard.types import (
    ErrorCode,
    ModelFeature,
    ProviderType,
    RoutingAlternative,
    RoutingDecision,
    RoutingMode,
    SkippedProvider,
)

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    entry: ProviderEntry
    model: ModelInfo
    latency_ms: float
    cost_usd: float
    error_rate: float
    score: float = 0.0

    @property
    def is_default(self) -> bool:
        return self.model.id == self.entry.default_model

    def tie_key(self) -> tuple[bool, int, str, str]:
        entry = self.entry
        return (not self.is_default, entry.config.priority, entry.type.value, self.model.id)


class AIRouter:
    """Pick a provider and model for each request.

    Args:
        registry: Source of candidates and live availability.
        config: Default routing policy; ``route`` accepts an override.
        analyzer: Task classifier; a default ``TaskAnalyzer`` when omitted.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: RoutingConfig | None = None,
        *,
        analyzer: TaskAnalyzer | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or RoutingConfig()
        self._analyzer = analyzer or TaskAnalyzer()

    @property
    def config(self) -> RoutingConfig:
        return self._config

    def preferred_provider(
        self, routing_config: RoutingConfig | None = None
    ) -> ProviderType | None:
        """The provider the policy puts first when everything is healthy.

        That is ``primary_provider`` when set, else the head of the
        fallback chain in custom mode. Score-based modes name none.
        """
        cfg = routing_config or self._config
        if cfg.primary_provider is not None:
            return cfg.primary_provider
        if cfg.mode == RoutingMode.CUSTOM:
            order = _custom_order(cfg)
            return order[0] if order else None
        return None

    def route(
        self,
        request: CompletionRequest,
        routing_config: RoutingConfig | None = None,
    ) -> RoutingDecision:
        """Decide where ``request`` should go.

        Args:
            request: The request to route.
            routing_config: Policy override for this request.

        Returns:
            Immutable decision with ranked alternatives.

        Raises:
            AIError: ``NO_AVAILABLE_PROVIDERS`` when no candidate survives
                filtering.
        """
        cfg = routing_config or self._config
        analysis = self._analyzer.analyze(request)
        output_tokens = expected_output_tokens(request)

        skipped: list[SkippedProvider] = []
        candidates = self._collect(request, cfg, analysis, output_tokens, skipped)
        if not candidates:
            reasons = ", ".join(f"{s.provider.value}: {s.reason}" for s in skipped) or "none"
            raise AIError(
                f"No provider can serve this request (skipped: {reasons})",
                ErrorCode.NO_AVAILABLE_PROVIDERS,
                metadata={"skipped": [s.to_dict() for s in skipped]},
            )

        candidates = self._apply_soft_limits(candidates, cfg)
        ranked = self._rank(candidates, cfg, analysis)
        reason = self._reason(ranked[0], cfg, analysis)

        pinned = self._pinned(request, candidates)
        if pinned is not None:
            ranked = [pinned] + [c for c in ranked if c.entry.type != pinned.entry.type]
            reason = "User specified model"
        else:
            task_route = cfg.task_type_routing.get(analysis.task_type.value)
            if task_route is not None:
                ranked, routed = self._apply_task_route(ranked, candidates, task_route)
                if routed:
                    reason = f"Task route for {analysis.task_type.value}"

        preferred = self.preferred_provider(cfg)
        primary_reason = next((s.reason for s in skipped if s.provider == preferred), None)
        if preferred is not None and primary_reason is not None:
            reason = (
                f"Primary provider {preferred.value} unavailable "
                f"({primary_reason}); {reason[0].lower()}{reason[1:]}"
            )

        chosen, rest = ranked[0], ranked[1 : 1 + cfg.max_alternatives]
        decision = RoutingDecision(
            provider=chosen.entry.type,
            model=chosen.model.id,
            reason=reason,
            mode=cfg.mode,
            score=round(chosen.score, 2),
            alternatives=tuple(
                RoutingAlternative(c.entry.type, c.model.id, round(c.score, 2)) for c in rest
            ),
            estimated_latency_ms=chosen.latency_ms,
            estimated_cost_usd=chosen.cost_usd,
            skipped=tuple(skipped),
        )
        logger.debug(
            "Routed %s request to %s/%s (%s)",
            analysis.task_type.value,
            decision.provider,
            decision.model,
            decision.reason,
        )
        return decision

    # -- candidate collection -------------------------------------------------

    def _collect(
        self,
        request: CompletionRequest,
        cfg: RoutingConfig,
        analysis: TaskAnalysis,
        output_tokens: int,
        skipped: list[SkippedProvider],
    ) -> list[_Candidate]:
        excluded = set(cfg.exclude_models)
        required = set(cfg.require_features) | analysis.required_features(
            streaming=request.stream
        )
        wants_vision = ModelFeature.VISION in required
        allowed_providers: list[ProviderType] | None = None
        if cfg.mode == RoutingMode.CUSTOM:
            allowed_providers = _custom_order(cfg)

        candidates: list[_Candidate] = []
        vision_dropped: list[_Candidate] = []
        for entry in self._registry.entries():
            if entry.type.value in excluded:
                continue
            if allowed_providers is not None and entry.type not in allowed_providers:
                continue
            reason = self._registry.unavailable_reason(entry.type, analysis.estimated_tokens)
            if reason is not None:
                skipped.append(SkippedProvider(entry.type, reason))
                continue
            for model in entry.models:
                if model.id in excluded:
                    continue
                if cfg.preferred_models and model.id not in cfg.preferred_models:
                    continue
                if model.context_window < analysis.estimated_tokens:
                    continue
                candidate = _Candidate(
                    entry=entry,
                    model=model,
                    latency_ms=estimate_latency(model, output_tokens),
                    cost_usd=estimate_cost(model, analysis.estimated_tokens, output_tokens),
                    error_rate=entry.breaker.error_rate,
                )
                if model.supports(required):
                    candidates.append(candidate)
                elif wants_vision and model.supports(required - {ModelFeature.VISION}):
                    vision_dropped.append(candidate)

        # The vision cue is textual, so it only narrows when some model qualifies.
        if not candidates and vision_dropped and ModelFeature.VISION not in cfg.require_features:
            logger.warning("No vision-capable model available; ignoring the image cue")
            candidates = vision_dropped
        return candidates

    @staticmethod
    def _apply_soft_limits(candidates: list[_Candidate], cfg: RoutingConfig) -> list[_Candidate]:
        result = candidates
        if cfg.max_latency_ms is not None:
            within = [c for c in result if c.latency_ms <= cfg.max_latency_ms]
            if within:
                result = within
            else:
                logger.warning(
                    "No candidate meets max_latency_ms=%s; ignoring the limit", cfg.max_latency_ms
                )
        if cfg.max_cost_per_request is not None:
            within = [c for c in result if c.cost_usd <= cfg.max_cost_per_request]
            if within:
                result = within
            else:
                logger.warning(
                    "No candidate meets max_cost_per_request=%s; ignoring the limit",
                    cfg.max_cost_per_request,
                )
        return result

    # -- ranking --------------------------------------------------------------

    def _rank(
        self,
        candidates: list[_Candidate],
        cfg: RoutingConfig,
        analysis: TaskAnalysis,
    ) -> list[_Candidate]:
        """Score every candidate and keep each provider's best model."""
        mode = cfg.mode
        if mode == RoutingMode.CUSTOM:
            return _rank_custom(candidates, cfg)

        latency_norm = _normalizer([c.latency_ms for c in candidates])
        cost_norm = _normalizer([c.cost_usd for c in candidates])
        if mode == RoutingMode.FAST:
            for c in candidates:
                c.score = 100.0 * (1.0 - latency_norm(c.latency_ms))
            ordered = sorted(candidates, key=lambda c: (c.latency_ms, *c.tie_key()))
        elif mode == RoutingMode.COST_OPTIMIZED:
            for c in candidates:
                c.score = 100.0 * (1.0 - cost_norm(c.cost_usd))
            ordered = sorted(candidates, key=lambda c: (c.cost_usd, *c.tie_key()))
        elif mode == RoutingMode.QUALITY:
            for c in candidates:
                c.score = _quality_score(c.model, analysis.task_type)
            ordered = sorted(candidates, key=lambda c: (-c.score, *c.tie_key()))
        else:
            w = cfg.weights
            total = (w.latency + w.cost + w.error_rate) or 1.0
            for c in candidates:
                penalty = (
                    w.latency * latency_norm(c.latency_ms)
                    + w.cost * cost_norm(c.cost_usd)
                    + w.error_rate * c.error_rate
                ) / total
                c.score = 100.0 * (1.0 - penalty)
            ordered = sorted(candidates, key=lambda c: (-round(c.score, 6), *c.tie_key()))
        return _best_per_provider(ordered)

    @staticmethod
    def _pinned(request: CompletionRequest, candidates: list[_Candidate]) -> _Candidate | None:
        if not request.model:
            return None
        matches = [c for c in candidates if c.model.id == request.model]
        if not matches:
            logger.warning("Requested model %s is not available; routing normally", request.model)
            return None
        return min(matches, key=lambda c: c.tie_key())

    @staticmethod
    def _apply_task_route(
        ranked: list[_Candidate],
        candidates: list[_Candidate],
        task_route: TaskRoute,
    ) -> tuple[list[_Candidate], bool]:
        """Move the task route's provider, then its fallbacks, to the front."""
        order = [task_route.provider, *task_route.fallback]
        by_provider = {c.entry.type: c for c in ranked}
        if task_route.model:
            pinned = next(
                (
                    c
                    for c in candidates
                    if c.entry.type == task_route.provider and c.model.id == task_route.model
                ),
                None,
            )
            if pinned is not None:
                by_provider[task_route.provider] = pinned

        front = [by_provider[p] for p in dict.fromkeys(order) if p in by_provider]
        if not front:
            return ranked, False
        front_types = {c.entry.type for c in front}
        return front + [c for c in ranked if c.entry.type not in front_types], (
            front[0].entry.type == task_route.provider
        )

    @staticmethod
    def _reason(chosen: _Candidate, cfg: RoutingConfig, analysis: TaskAnalysis) -> str:
        target = f"{chosen.entry.type.value}/{chosen.model.id}"
        if cfg.mode == RoutingMode.FAST:
            return f"Lowest estimated latency: {target} (~{chosen.latency_ms:.0f} ms)"
        if cfg.mode == RoutingMode.COST_OPTIMIZED:
            return f"Lowest estimated cost: {target} (${chosen.cost_usd:.6f})"
        if cfg.mode == RoutingMode.QUALITY:
            return f"Highest capability for {analysis.task_type.value}: {target}"
        if cfg.mode == RoutingMode.CUSTOM:
            if chosen.entry.type == cfg.primary_provider:
                return f"Primary provider: {target}"
            return f"Fallback chain: {target}"
        return f"Best balanced score {chosen.score:.1f}: {target}"


def _custom_order(cfg: RoutingConfig) -> list[ProviderType]:
    order: list[ProviderType] = []
    if cfg.primary_provider is not None:
        order.append(cfg.primary_provider)
    order.extend(cfg.fallback_chain)
    return list(dict.fromkeys(order))


def _rank_custom(candidates: list[_Candidate], cfg: RoutingConfig) -> list[_Candidate]:
    order = _custom_order(cfg)
    ranked: list[_Candidate] = []
    for position, provider in enumerate(order):
        mine = [c for c in candidates if c.entry.type == provider]
        if not mine:
            continue
        best = min(mine, key=lambda c: c.tie_key())
        best.score = float(len(order) - position)
        ranked.append(best)
    return ranked


def _best_per_provider(ordered: list[_Candidate]) -> list[_Candidate]:
    seen: set[ProviderType] = set()
    best: list[_Candidate] = []
    for c in ordered:
        if c.entry.type in seen:
            continue
        seen.add(c.entry.type)
        best.append(c)
    return best


def _normalizer(values: list[float]) -> Callable[[float], float]:
    """Min-max normalizer over ``values``; all-equal inputs map to 0."""
    lo, hi = min(values), max(values)
    span = hi - lo

    def norm(value: float) -> float:
        return 0.0 if span <= 0 else (value - lo) / span

    return norm


def _quality_score(model: ModelInfo, task_type: TaskType) -> float:
    """Capability score in 0..100, weighted by task type."""
    reasoning = model.capabilities.reasoning_level
    coding = model.capabilities.coding_level
    if task_type in (TaskType.CODE_GENERATION, TaskType.CODE_ANALYSIS):
        weighted = 0.3 * reasoning + 0.7 * coding
    elif task_type == TaskType.REASONING:
        weighted = 0.7 * reasoning + 0.3 * coding
    else:
        weighted = 0.5 * reasoning + 0.5 * coding
    return 25.0 * weighted
