"""Same-provider retry with exponential backoff.

Used by the service when a provider is configured with ``max_retries``
above zero. Only errors whose code is in ``retryable_codes`` (and whose
``retryable`` flag is set) are retried; anything else propagates at once
so the fallback walk can move to the next provider.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from switchboard.errors import AIError
from switchboard.types import ErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.PROVIDER_ERROR, ErrorCode.RATE_LIMIT_EXCEEDED, ErrorCode.TIMEOUT}
)

OnRetry = Callable[[int, AIError, float], None]


class RetryHandler:
    """Retry an async operation on transient ``AIError``s.

    Args:
        max_retries: Retries after the first attempt (0 disables retry).
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
        multiplier: Factor applied to the delay after each retry.
        retryable_codes: Error codes eligible for retry.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        max_retries: int = 0,
        *,
        initial_delay: float = 0.5,
        max_delay: float = 8.0,
        multiplier: float = 2.0,
        retryable_codes: frozenset[ErrorCode] = DEFAULT_RETRYABLE_CODES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.retryable_codes = retryable_codes
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), in seconds."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def should_retry(self, error: AIError) -> bool:
        return error.retryable and error.code in self.retryable_codes

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: OnRetry | None = None,
    ) -> T:
        """Run ``operation``, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory.
            on_retry: Called as ``(attempt, error, delay)`` before each retry.

        Returns:
            The operation's result.

        Raises:
            AIError: The last error, once retries are exhausted or the
                error is not retryable.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except AIError as exc:
                if attempt >= self.max_retries or not self.should_retry(exc):
                    raise
                attempt += 1
                delay = self.delay_for(attempt)
                logger.info(
                    "Retrying after %s (attempt %d/%d, %.2fs)",
                    exc.code.value,
                    attempt,
                    self.max_retries,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)
