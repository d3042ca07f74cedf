"""Heuristic task analysis for routing.

Classifies a request by looking at its last user message: what kind of
task it is, how complex it looks, and which model features it needs.
The router uses the result to pick ``task_type_routing`` overrides,
weight quality scores, and add implied feature requirements.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum

from switchboard.models import CompletionRequest
from switchboard.pricing import estimate_request_tokens
from switchboard.types import ModelFeature


class TaskType(StrEnum):
    """Kinds of task recognized by ``TaskAnalyzer``."""

    GENERAL = "general"
    CODE_GENERATION = "code_generation"
    CODE_ANALYSIS = "code_analysis"
    REASONING = "reasoning"
    TOOL_USE = "tool_use"
    CONVERSATION = "conversation"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    CLASSIFICATION = "classification"
    EXTRACTION = "extraction"


# Checked in order; the first matching pattern decides the task type.
_TASK_PATTERNS: list[tuple[TaskType, re.Pattern[str]]] = [
    (
        TaskType.CODE_ANALYSIS,
        re.compile(
            r"\b(review|debug|refactor|explain|analy[sz]e|fix)\b"
            r".*\b(code|bug|function|api|stack ?trace|error)\b"
        ),
    ),
    (
        TaskType.CODE_GENERATION,
        re.compile(
            r"\b(write|implement|generate|create|build)\b"
            r".*\b(code|function|class|script|program|algorithm|api)\b"
        ),
    ),
    (
        TaskType.REASONING,
        re.compile(r"\b(step by step|reason|logic|puzzle|prove|deduce|solve|math)\b"),
    ),
    (TaskType.SUMMARIZATION, re.compile(r"\b(summari[sz]e|summary|tl;?dr|condense)\b")),
    (TaskType.TRANSLATION, re.compile(r"\b(translate|translation)\b")),
    (TaskType.CLASSIFICATION, re.compile(r"\b(classify|categori[sz]e|label|sentiment)\b")),
    (TaskType.EXTRACTION, re.compile(r"\b(extract|parse|pull out)\b")),
]

_HIGH_COMPLEXITY = re.compile(
    r"\b(design|architect\w*|comprehensive|in[- ]depth|complex|optimi[sz]e|distributed|"
    r"microservices?|trade-?offs?)\b"
)
_VISION = re.compile(r"\b(image|picture|photo|screenshot|diagram)\b")
_GREETING = re.compile(r"^\s*(hi|hello|hey|thanks|thank you)\b")

_STOPWORDS = frozenset(
    "a an the and or but of to in on for with at by from is are was were be been this that "
    "these those it its as into about what which who how why when where can could would should "
    "will do does did i you we they he she me my your our their please".split()
)


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class TaskAnalysis:
    """Result of analyzing one request.

    Attributes:
        task_type: Detected task kind.
        complexity: Rough difficulty.
        requires_tools: The request offers tools.
        requires_vision: The text refers to images.
        requires_reasoning: Reasoning task, or high complexity.
        estimated_tokens: Prompt token estimate.
        keywords: Up to ten distinctive lowercase words.
    """

    task_type: TaskType
    complexity: Complexity
    requires_tools: bool = False
    requires_vision: bool = False
    requires_reasoning: bool = False
    estimated_tokens: int = 0
    keywords: list[str] = field(default_factory=list)

    def required_features(self, *, streaming: bool = False) -> set[ModelFeature]:
        """Features a candidate model must support for this task."""
        features: set[ModelFeature] = set()
        if self.requires_tools:
            features.add(ModelFeature.TOOL_USE)
        if self.requires_vision:
            features.add(ModelFeature.VISION)
        if streaming:
            features.add(ModelFeature.STREAMING)
        return features


class TaskAnalyzer:
    """Classify requests with keyword heuristics. Stateless."""

    def analyze(self, request: CompletionRequest) -> TaskAnalysis:
        """Analyze a request.

        Args:
            request: The request to classify.

        Returns:
            TaskAnalysis for the request's last user message.
        """
        text = _last_user_text(request).lower()
        task_type = self._task_type(text, request)
        complexity = self._complexity(text)
        return TaskAnalysis(
            task_type=task_type,
            complexity=complexity,
            requires_tools=bool(request.tools),
            requires_vision=bool(_VISION.search(text)),
            requires_reasoning=task_type == TaskType.REASONING or complexity == Complexity.HIGH,
            estimated_tokens=estimate_request_tokens(request),
            keywords=extract_keywords(text),
        )

    @staticmethod
    def _task_type(text: str, request: CompletionRequest) -> TaskType:
        for task_type, pattern in _TASK_PATTERNS:
            if pattern.search(text):
                return task_type
        if request.tools:
            return TaskType.TOOL_USE
        if _GREETING.search(text) or len(request.messages) > 4:
            return TaskType.CONVERSATION
        return TaskType.GENERAL

    @staticmethod
    def _complexity(text: str) -> Complexity:
        words = len(text.split())
        if _HIGH_COMPLEXITY.search(text) or words > 300:
            return Complexity.HIGH
        if words < 20:
            return Complexity.LOW
        return Complexity.MEDIUM


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Distinctive lowercase words in first-seen order, stopwords removed."""
    seen: dict[str, None] = {}
    for word in re.findall(r"[a-z][a-z0-9_+#-]{2,}", text.lower()):
        if word not in _STOPWORDS:
            seen.setdefault(word, None)
        if len(seen) >= limit:
            break
    return list(seen)


def _last_user_text(request: CompletionRequest) -> str:
    for message in reversed(request.messages):
        if message.role == "user":
            return message.content
    return ""
