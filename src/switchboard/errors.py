"""Error taxonomy for the routing layer.

Every terminal failure a caller sees is an ``AIError`` carrying one
``ErrorCode``. Provider adapters raise it with ``retryable`` set so the
service's fallback walk can decide whether to move on.

Typical usage::

    from switchboard.errors import AIError
    from switchboard.types import ErrorCode

    try:
        response = await service.complete(request)
    except AIError as exc:
        if exc.code == ErrorCode.SAFETY_VIOLATION:
            ...
"""

from __future__ import annotations

from typing import Any

from switchboard.types import ErrorCode, ProviderType

# Codes that reflect backend health and count against a circuit breaker.
PROVIDER_FAILURE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.PROVIDER_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.RATE_LIMIT_EXCEEDED,
        ErrorCode.AUTHENTICATION_ERROR,
    }
)

# Codes that end a request immediately without trying alternatives.
FATAL_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.AUTHENTICATION_ERROR,
        ErrorCode.INVALID_REQUEST,
        ErrorCode.SAFETY_VIOLATION,
    }
)

_DEFAULT_RETRYABLE: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.PROVIDER_ERROR,
        ErrorCode.RATE_LIMIT_EXCEEDED,
        ErrorCode.TIMEOUT,
        ErrorCode.CIRCUIT_OPEN,
    }
)


class AIError(Exception):
    """Raised for any failure surfaced by the routing layer.

    Attributes:
        code: Taxonomy code for the failure.
        provider: Backend the failure is attributed to, if any.
        retryable: Whether another attempt (same or different backend)
            may succeed.
        metadata: Extra structured detail (HTTP status, attempts, etc.).
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        *,
        provider: ProviderType | None = None,
        retryable: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.provider = provider
        self.retryable = code in _DEFAULT_RETRYABLE if retryable is None else retryable
        self.metadata = metadata or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        """The human-readable message."""
        return str(self.args[0]) if self.args else ""

    @property
    def is_provider_failure(self) -> bool:
        """Whether this error should be recorded against the backend's circuit."""
        return self.code in PROVIDER_FAILURE_CODES

    @property
    def is_fatal(self) -> bool:
        """Whether the request must stop without trying alternatives."""
        return self.code in FATAL_CODES

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "message": self.message,
            "code": self.code.value,
            "provider": self.provider.value if self.provider else None,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }

    def __repr__(self) -> str:
        return f"AIError({self.message!r}, code={self.code.value})"
