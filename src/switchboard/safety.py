"""Safety validation for requests, completions, and monetary actions.

Four validators, each producing ``SafetyCheckResult`` records, sit behind
one ``SafetyManager``:

- ``InputValidator``: length, prompt injection, jailbreak, and custom
  block patterns over user and tool messages.
- ``OutputValidator``: PII detection and redaction, length enforcement,
  and an advisory hallucination flag.
- ``ContentFilter``: topic categories screened on both input and output.
- ``RiskValidator``: value thresholds for transactions.

Patterns are compiled once at import and checked in a fixed order, so a
given text always yields the same verdict.

Typical usage::

    safety = SafetyManager(config.safety)
    results = safety.validate_request(request)
    blocking = safety.get_blocking(results)
    if blocking is not None:
        raise AIError(blocking.reason, ErrorCode.SAFETY_VIOLATION)
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace

from switchboard.config import (
    ContentFilterConfig,
    InputValidationConfig,
    OutputValidationConfig,
    RiskThresholds,
    SafetyConfig,
)
from switchboard.models import (
    CompletionRequest,
    CompletionResponse,
    SafetyCheckResult,
    TransactionContext,
)
from switchboard.types import SafetyAction, Severity

logger = logging.getLogger(__name__)

_I = re.IGNORECASE | re.DOTALL

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_INJECTION_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "ignore_instructions",
        re.compile(
            r"\b(ignore|disregard|forget|override)\b.{0,30}?\b(previous|prior|above|earlier|all)\b"
            r".{0,20}?\b(instructions?|rules|prompts?|directions|guidelines)\b",
            _I,
        ),
    ),
    (
        "forget_context",
        re.compile(r"\bforget\s+(everything|all)\b.{0,40}?\b(told|said|instructions?)\b", _I),
    ),
    (
        "behavior_override",
        re.compile(r"\bfrom now on,?\s+you\s+(will|must|shall)\s+(ignore|disregard|forget)\b", _I),
    ),
    ("role_marker", re.compile(r"\[\s*(system|admin)\s*\]", _I)),
    (
        "reveal_system_prompt",
        re.compile(
            r"\b(reveal|show|print|repeat|output|tell me)\b.{0,30}?"
            r"\b(system prompt|hidden instructions|initial instructions)\b",
            _I,
        ),
    ),
    (
        "privilege_escalation",
        re.compile(
            r"\byou are now\b.{0,30}?\b(admin|administrator|root|superuser|unrestricted)\b"
            r"|\b(enable|grant)\b.{0,20}?\b(admin|root|sudo)\s+(mode|access|privileges)\b",
            _I,
        ),
    ),
]

_JAILBREAK_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("dan", re.compile(r"\bDAN\s+mode\b|\bdo anything now\b", _I)),
    ("developer_mode", re.compile(r"\bdeveloper\s+mode\b", _I)),
    (
        "bypass_safety",
        re.compile(
            r"\bbypass\b.{0,30}?\b(safety|filters?|restrictions|guardrails|content polic(y|ies))\b",
            _I,
        ),
    ),
    (
        "remove_constraints",
        re.compile(
            r"\b(remove|disable|ignore|without)\b.{0,20}?"
            r"\b(ethical|moral|safety)\s+(constraints|guidelines|restrictions|limits)\b",
            _I,
        ),
    ),
    (
        "fiction_framing",
        re.compile(
            r"\bpretend\b.{0,40}?\b(fiction|hypothetical|roleplay|a game)\b"
            r".{0,40}?\b(ignore|no|without)\s+(the\s+)?(rules|restrictions|limits)\b",
            _I,
        ),
    ),
    ("jailbreak", re.compile(r"\bjailbr(eak|oken)\b", _I)),
]

# Applied in order; each pattern consumes its spans before the next runs.
PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "api_key": re.compile(
        r"\b(?:sk|pk|rk|gsk|xai|api|key)[-_][A-Za-z0-9_-]{20,}\b|\bAKIA[0-9A-Z]{16}\b"
    ),
    "credit_card": re.compile(r"\b(?:\d{4}[- ]?){3}\d{4}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "ton_address": re.compile(
        r"\b(?:EQ|UQ|kQ|0Q)[A-Za-z0-9_-]{46}(?![\w-])|(?<![\w:])-?[01]:[0-9a-fA-F]{64}\b"
    ),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
}

_HALLUCINATION_MARKERS = re.compile(
    r"\b(as of my (last|latest) (update|training)|i (cannot|can't) verify|"
    r"i (believe|think) (but|though) i'?m not (sure|certain)|according to (a|some) sources?)\b",
    _I,
)

_TAG_BODY = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", _I)
_TAG = re.compile(r"</?[A-Za-z][^>]*>")
_ROLE_MARKER = re.compile(r"\[\s*(system|admin|assistant|developer)\s*\]", re.IGNORECASE)

# Category -> (pattern, severity, action). Dict order is check order.
CONTENT_CATEGORIES: dict[str, tuple[re.Pattern[str], Severity, SafetyAction]] = {
    "hate": (
        re.compile(
            r"\b(kill|exterminate|eliminate|wipe out)\b.{0,30}?\b(all|every)\b.{0,30}?"
            r"\b(members of|people of|ethnic|race|religion)\b"
            r"|\b(inferior|subhuman)\s+(race|people|group)\b",
            _I,
        ),
        Severity.CRITICAL,
        SafetyAction.BLOCK,
    ),
    "harassment": (
        re.compile(
            r"\b(you are|you're)\s+(worthless|pathetic|subhuman)\b|\bi will (find|hunt) you\b", _I
        ),
        Severity.HIGH,
        SafetyAction.BLOCK,
    ),
    "violence": (
        re.compile(
            r"\b(make|build|assemble)\b.{0,20}?\b(bomb|explosive|ied|pipe bomb)\b"
            r"|\b(attack|shoot|stab)\s+(people|civilians|a crowd)\b|\bhow to (kill|murder)\b",
            _I,
        ),
        Severity.CRITICAL,
        SafetyAction.BLOCK,
    ),
    "sexual": (
        re.compile(r"\b(explicit sexual|sexual content involving)\b", _I),
        Severity.HIGH,
        SafetyAction.BLOCK,
    ),
    "self_harm": (
        re.compile(
            r"\b(hurt|harm|kill)\s+(yourself|myself)\b|\bsuicide methods?\b"
            r"|\bways to (end my life|commit suicide)\b",
            _I,
        ),
        Severity.CRITICAL,
        SafetyAction.ESCALATE,
    ),
    "dangerous": (
        re.compile(
            r"\b(synthesi[sz]\w*|manufactur\w*|produc\w*|mak\w*)\b.{0,40}?"
            r"\b(chemical weapons?|nerve agents?|bioweapons?|sarin|ricin|anthrax)\b",
            _I,
        ),
        Severity.CRITICAL,
        SafetyAction.BLOCK,
    ),
    "financial_advice": (
        re.compile(
            r"\b(guaranteed returns?|you should (buy|sell|invest in)|can'?t lose"
            r"|risk-free investment)\b",
            _I,
        ),
        Severity.LOW,
        SafetyAction.WARN,
    ),
    "medical_advice": (
        re.compile(r"\b(you should (take|stop taking)|recommended dosage|i diagnose you)\b", _I),
        Severity.LOW,
        SafetyAction.WARN,
    ),
    "legal_advice": (
        re.compile(r"\b(you should sue|you are legally (entitled|required))\b", _I),
        Severity.LOW,
        SafetyAction.WARN,
    ),
}


def strip_html(text: str) -> str:
    """Remove HTML tags, dropping script and style bodies entirely."""
    return _TAG.sub("", _TAG_BODY.sub("", text))


def _first_match(
    patterns: list[tuple[str, re.Pattern[str]]], text: str
) -> tuple[str, str] | None:
    for name, pattern in patterns:
        match = pattern.search(text)
        if match:
            return name, match.group(0)
    return None


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


class InputValidator:
    """Checks applied to caller-supplied text before routing."""

    def __init__(self, config: InputValidationConfig | None = None) -> None:
        self.config = config or InputValidationConfig()
        self._block_patterns = [
            (p, re.compile(p, re.IGNORECASE)) for p in self.config.block_patterns
        ]

    def prepare(self, text: str) -> str:
        """Text as the checks see it: tags stripped when configured."""
        return strip_html(text) if self.config.sanitize_html else text

    def check_length(self, text: str) -> SafetyCheckResult:
        if len(text) > self.config.max_length:
            return SafetyCheckResult(
                passed=False,
                check="input_length",
                category="length",
                severity=Severity.MEDIUM,
                action=SafetyAction.BLOCK,
                reason=f"Input exceeds maximum length of {self.config.max_length} characters",
                metadata={"length": len(text), "max_length": self.config.max_length},
            )
        return SafetyCheckResult(passed=True, check="input_length", category="length")

    def check_injection(self, text: str) -> SafetyCheckResult:
        found = None
        if self.config.detect_prompt_injection:
            found = _first_match(_INJECTION_PATTERNS, text)
        if found:
            return SafetyCheckResult(
                passed=False,
                check="prompt_injection",
                category="prompt_injection",
                severity=Severity.HIGH,
                action=SafetyAction.BLOCK,
                reason=f"Potential prompt injection detected ({found[0]})",
                metadata={"pattern": found[0], "match": found[1]},
            )
        return SafetyCheckResult(passed=True, check="prompt_injection", category="prompt_injection")

    def check_jailbreak(self, text: str) -> SafetyCheckResult:
        found = _first_match(_JAILBREAK_PATTERNS, text) if self.config.detect_jailbreak else None
        if found:
            return SafetyCheckResult(
                passed=False,
                check="jailbreak",
                category="jailbreak",
                severity=Severity.HIGH,
                action=SafetyAction.BLOCK,
                reason=f"Potential jailbreak attempt detected ({found[0]})",
                metadata={"pattern": found[0], "match": found[1]},
            )
        return SafetyCheckResult(passed=True, check="jailbreak", category="jailbreak")

    def check_block_patterns(self, text: str) -> SafetyCheckResult:
        for source, pattern in self._block_patterns:
            if pattern.search(text):
                return SafetyCheckResult(
                    passed=False,
                    check="block_patterns",
                    category="custom",
                    severity=Severity.HIGH,
                    action=SafetyAction.BLOCK,
                    reason="Input matches a blocked pattern",
                    metadata={"pattern": source},
                )
        return SafetyCheckResult(passed=True, check="block_patterns", category="custom")

    def validate(self, text: str) -> SafetyCheckResult:
        """Run every input check on one text; return the first failure.

        Args:
            text: Raw input text.

        Returns:
            The first failing result, or a passing ``input`` result.
        """
        for result in self.validate_all(text):
            if not result.passed:
                return result
        return SafetyCheckResult(passed=True, check="input")

    def validate_all(self, text: str) -> list[SafetyCheckResult]:
        """Run every input check on one text, one result per check."""
        prepared = self.prepare(text)
        return [
            self.check_length(text),
            self.check_injection(prepared),
            self.check_jailbreak(prepared),
            self.check_block_patterns(prepared),
        ]

    def sanitize(self, text: str) -> str:
        """Strip tags and neutralize fake role markers."""
        return _ROLE_MARKER.sub("[blocked]", strip_html(text))


class OutputValidator:
    """Checks applied to completions before they reach the caller."""

    def __init__(self, config: OutputValidationConfig | None = None) -> None:
        self.config = config or OutputValidationConfig()

    @staticmethod
    def detect_pii(text: str) -> dict[str, int]:
        """Count PII matches per type, in redaction order."""
        found: dict[str, int] = {}
        for pii_type, pattern in PII_PATTERNS.items():
            matches = pattern.findall(text)
            if matches:
                found[pii_type] = len(matches)
                text = pattern.sub(" ", text)
        return found

    @staticmethod
    def redact(text: str) -> str:
        """Replace each PII span with ``[REDACTED_<TYPE>]``. Idempotent."""
        for pii_type, pattern in PII_PATTERNS.items():
            text = pattern.sub(f"[REDACTED_{pii_type.upper()}]", text)
        return text

    def truncate(self, text: str) -> str:
        if len(text) <= self.config.max_length:
            return text
        return text[: self.config.max_length]

    def check_length(self, text: str) -> SafetyCheckResult:
        if len(text) > self.config.max_length:
            return SafetyCheckResult(
                passed=False,
                check="output_length",
                category="length",
                severity=Severity.LOW,
                action=SafetyAction.WARN,
                reason=f"Output truncated to {self.config.max_length} characters",
                metadata={"length": len(text), "max_length": self.config.max_length},
            )
        return SafetyCheckResult(passed=True, check="output_length", category="length")

    def check_pii(self, text: str) -> SafetyCheckResult:
        found = self.detect_pii(text) if self.config.detect_pii else {}
        if found:
            pii_type = next(iter(found))
            redacting = self.config.redact_sensitive
            return SafetyCheckResult(
                passed=False,
                check="pii",
                category="pii",
                severity=Severity.MEDIUM if redacting else Severity.HIGH,
                action=SafetyAction.WARN if redacting else SafetyAction.BLOCK,
                reason=f"Output contains sensitive data ({', '.join(found)})",
                metadata={"pii_type": pii_type, "counts": found, "redacted": redacting},
            )
        return SafetyCheckResult(passed=True, check="pii", category="pii")

    def check_hallucination(self, text: str) -> SafetyCheckResult:
        match = _HALLUCINATION_MARKERS.search(text) if self.config.detect_hallucination else None
        if match:
            # Advisory only.
            return SafetyCheckResult(
                passed=True,
                check="hallucination",
                category="hallucination",
                severity=Severity.LOW,
                action=SafetyAction.WARN,
                reason="Output contains uncertainty markers",
                metadata={"match": match.group(0)},
            )
        return SafetyCheckResult(passed=True, check="hallucination", category="hallucination")

    def validate(self, text: str) -> SafetyCheckResult:
        """Run the output checks on one text; return the first offending one."""
        for result in self.validate_all(text):
            if result.offending:
                return result
        return SafetyCheckResult(passed=True, check="output")

    def validate_all(self, text: str) -> list[SafetyCheckResult]:
        return [self.check_length(text), self.check_pii(text), self.check_hallucination(text)]


class ContentFilter:
    """Screen text against enabled topic categories."""

    def __init__(self, config: ContentFilterConfig | None = None) -> None:
        self.config = config or ContentFilterConfig()
        enabled = set(self.config.categories)
        unknown = enabled - CONTENT_CATEGORIES.keys()
        if unknown:
            logger.warning("Ignoring unknown content categories: %s", ", ".join(sorted(unknown)))
        self._categories = [
            (name, rule) for name, rule in CONTENT_CATEGORIES.items() if name in enabled
        ]

    def filter(self, text: str) -> SafetyCheckResult:
        """Check ``text`` against every enabled category.

        Args:
            text: Text to screen.

        Returns:
            The most severe matching category (first on ties), or a
            passing result.
        """
        worst: SafetyCheckResult | None = None
        for name, (pattern, severity, action) in self._categories:
            match = pattern.search(text)
            if not match:
                continue
            result = SafetyCheckResult(
                passed=action == SafetyAction.WARN,
                check="content_filter",
                category=name,
                severity=severity,
                action=action,
                reason=f"Content flagged as {name.replace('_', ' ')}",
                metadata={"match": match.group(0)},
            )
            if worst is None or severity.rank > worst.severity.rank:
                worst = result
        return worst or SafetyCheckResult(passed=True, check="content_filter")


class RiskValidator:
    """Value thresholds for monetary actions."""

    def __init__(self, thresholds: RiskThresholds | None = None) -> None:
        self.thresholds = thresholds or RiskThresholds()

    def validate_transaction(self, tx: TransactionContext) -> SafetyCheckResult:
        """Classify a transaction against the configured thresholds.

        Args:
            tx: The transaction to screen.

        Returns:
            A single verdict. ``block`` when the daily total would be
            exceeded; ``escalate`` above the single-transaction or
            multi-signature limit; ``warn`` above the confirmation limit
            (``escalate`` for a new destination); otherwise ``allow``.
        """
        t = self.thresholds
        meta = {
            "value_ton": tx.value_ton,
            "daily_total_ton": tx.daily_total_ton,
            "transaction_type": tx.transaction_type,
        }
        if tx.daily_total_ton + tx.value_ton > t.max_daily_transactions_ton:
            return SafetyCheckResult(
                passed=False,
                check="transaction",
                category="transaction",
                severity=Severity.CRITICAL,
                action=SafetyAction.BLOCK,
                reason=(
                    f"Transaction would exceed daily limit of {t.max_daily_transactions_ton} TON"
                ),
                metadata=meta,
            )
        if tx.value_ton > t.max_transaction_value_ton:
            return SafetyCheckResult(
                passed=False,
                check="transaction",
                category="transaction",
                severity=Severity.HIGH,
                action=SafetyAction.ESCALATE,
                reason=(
                    f"Transaction value {tx.value_ton} TON exceeds maximum of "
                    f"{t.max_transaction_value_ton} TON"
                ),
                metadata={**meta, "require_multi_sig": True},
            )
        if tx.value_ton > t.require_multi_sig_above:
            return SafetyCheckResult(
                passed=True,
                check="transaction",
                category="transaction",
                severity=Severity.HIGH,
                action=SafetyAction.ESCALATE,
                reason=f"Transactions above {t.require_multi_sig_above} TON require multi-sig",
                metadata={**meta, "require_multi_sig": True},
            )
        if tx.value_ton > t.require_confirmation_above:
            if tx.is_new_destination:
                return SafetyCheckResult(
                    passed=True,
                    check="transaction",
                    category="transaction",
                    severity=Severity.HIGH,
                    action=SafetyAction.ESCALATE,
                    reason="Large transfer to a new destination requires review",
                    metadata={**meta, "require_confirmation": True, "new_destination": True},
                )
            return SafetyCheckResult(
                passed=True,
                check="transaction",
                category="transaction",
                severity=Severity.MEDIUM,
                action=SafetyAction.WARN,
                reason=f"Transactions above {t.require_confirmation_above} TON need confirmation",
                metadata={**meta, "require_confirmation": True},
            )
        return SafetyCheckResult(
            passed=True, check="transaction", category="transaction", metadata=meta
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SafetyManager:
    """Facade over the input, output, content, and risk validators.

    Args:
        config: Safety policy. ``enabled=False`` turns request and output
            validation into no-ops; transactions are always screened.
    """

    def __init__(self, config: SafetyConfig | None = None) -> None:
        self.config = config or SafetyConfig()
        self.input = InputValidator(self.config.input)
        self.output = OutputValidator(self.config.output)
        self.content = ContentFilter(self.config.content_filter)
        self.risk = RiskValidator(self.config.risk)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def validate_request(self, request: CompletionRequest) -> list[SafetyCheckResult]:
        """Validate the user and tool messages of a request.

        Every check runs; each contributes one result, the first failure
        across messages or a pass.

        Args:
            request: The request to screen.

        Returns:
            One result per check, in check order. Empty when disabled.
        """
        if not self.enabled:
            return []
        texts = [m.content for m in request.messages if m.role in ("user", "tool")]
        per_text = [
            self.input.validate_all(t) + [self.content.filter(self.input.prepare(t))]
            for t in texts
        ]
        if not per_text:
            return []
        results: list[SafetyCheckResult] = []
        for column in zip(*per_text, strict=True):
            offending = [r for r in column if r.offending]
            results.append(offending[0] if offending else column[0])
        return results

    def prepare_request(self, request: CompletionRequest) -> CompletionRequest:
        """Return the request with tags stripped from user and tool messages.

        Unchanged (same object) when ``sanitize_html`` is off or nothing
        was stripped.
        """
        if not self.enabled or not self.config.input.sanitize_html:
            return request
        changed = False
        messages = []
        for message in request.messages:
            if message.role in ("user", "tool"):
                cleaned = strip_html(message.content)
                if cleaned != message.content:
                    message = replace(message, content=cleaned)
                    changed = True
            messages.append(message)
        return request.with_messages(messages) if changed else request

    def validate_output(self, text: str) -> list[SafetyCheckResult]:
        """Run length, PII, hallucination, and content checks on ``text``."""
        if not self.enabled:
            return []
        return self.output.validate_all(text) + [self.content.filter(text)]

    def validate_response(self, response: CompletionResponse) -> list[SafetyCheckResult]:
        """Validate every choice of a response."""
        results: list[SafetyCheckResult] = []
        for choice in response.choices:
            results.extend(self.validate_output(choice.message.content))
        return results

    def redact_output(self, text: str) -> str:
        """Redact PII spans when redaction is configured."""
        if not self.enabled or not self.config.output.redact_sensitive:
            return text
        return self.output.redact(text)

    def finalize_output(self, text: str) -> str:
        """Redact and truncate ``text`` as the caller will receive it."""
        if not self.enabled:
            return text
        return self.output.truncate(self.redact_output(text))

    def sanitize_input(self, text: str) -> str:
        return self.input.sanitize(text)

    def validate_transaction(self, tx: TransactionContext) -> SafetyCheckResult:
        return self.risk.validate_transaction(tx)

    @staticmethod
    def all_passed(results: list[SafetyCheckResult]) -> bool:
        return all(r.passed for r in results)

    @staticmethod
    def get_most_severe(results: list[SafetyCheckResult]) -> SafetyCheckResult | None:
        """Most severe offending result; the first one wins ties.

        Args:
            results: Results in check order.

        Returns:
            The worst result that failed or recommends anything but
            ``allow``, or None when every result is clean.
        """
        worst: SafetyCheckResult | None = None
        for result in results:
            if not result.offending:
                continue
            if worst is None or result.severity.rank > worst.severity.rank:
                worst = result
        return worst

    @staticmethod
    def get_blocking(results: list[SafetyCheckResult]) -> SafetyCheckResult | None:
        """Most severe result whose action is ``block`` or ``escalate``."""
        return SafetyManager.get_most_severe(
            [r for r in results if r.action in (SafetyAction.BLOCK, SafetyAction.ESCALATE)]
        )
