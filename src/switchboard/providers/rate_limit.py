"""Client-side rate limiting for one provider.

Keeps sliding windows of recent requests (one minute and one day) and of
tokens sent in the last minute, so a call that would exceed the
provider's configured budget is rejected locally before any network
attempt.

Typical usage::

    limiter = RateLimiter(requests_per_minute=60, tokens_per_minute=90_000)
    if limiter.can_make_request(tokens=1200):
        limiter.record_request(tokens=1200)
    else:
        delay_ms = limiter.wait_time_ms()
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

from switchboard.config import RateLimitConfig

MINUTE = 60.0
DAY = 86_400.0


class RateLimiter:
    """Sliding-window request and token budget.

    Any limit left as None is not enforced. Thread-safe.

    Args:
        requests_per_minute: Requests allowed in any 60-second window.
        tokens_per_minute: Tokens allowed in any 60-second window.
        requests_per_day: Requests allowed in any 24-hour window.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        requests_per_minute: int | None = None,
        tokens_per_minute: int | None = None,
        requests_per_day: int | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self.requests_per_day = requests_per_day
        self._clock = clock
        self._lock = threading.Lock()
        self._minute_requests: deque[float] = deque()
        self._minute_tokens: deque[tuple[float, int]] = deque()
        self._day_requests: deque[float] = deque()
        self._token_total = 0

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig | None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> RateLimiter:
        """Build a limiter from a provider's rate limit section (None: unlimited)."""
        if config is None:
            return cls(clock=clock)
        return cls(
            requests_per_minute=config.requests_per_minute,
            tokens_per_minute=config.tokens_per_minute,
            requests_per_day=config.requests_per_day,
            clock=clock,
        )

    @property
    def is_limited(self) -> bool:
        """Whether any limit is configured."""
        return any(
            v is not None
            for v in (self.requests_per_minute, self.tokens_per_minute, self.requests_per_day)
        )

    def can_make_request(self, tokens: int = 0) -> bool:
        """Whether a request of ``tokens`` fits every budget right now."""
        with self._lock:
            self._prune(self._clock())
            return self._fits(tokens)

    def try_acquire(self, tokens: int = 0) -> bool:
        """Check and record in one step.

        Returns:
            True if the request fit and was recorded.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            if not self._fits(tokens):
                return False
            self._record(now, tokens)
            return True

    def record_request(self, tokens: int = 0) -> None:
        """Record a request without checking the budget."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._record(now, tokens)

    def wait_time_ms(self, tokens: int = 0) -> int:
        """Milliseconds until a request of ``tokens`` would fit; 0 if it fits now."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            waits = [0.0]
            if (
                self.requests_per_minute is not None
                and len(self._minute_requests) >= self.requests_per_minute
                and self._minute_requests
            ):
                waits.append(self._minute_requests[0] + MINUTE - now)
            if (
                self.requests_per_day is not None
                and len(self._day_requests) >= self.requests_per_day
                and self._day_requests
            ):
                waits.append(self._day_requests[0] + DAY - now)
            if self.tokens_per_minute is not None:
                excess = self._token_total + tokens - self.tokens_per_minute
                for ts, count in self._minute_tokens:
                    if excess <= 0:
                        break
                    excess -= count
                    waits.append(ts + MINUTE - now)
            return max(0, int(max(waits) * 1000))

    def usage(self) -> dict[str, int]:
        """Current window counts, for status displays."""
        with self._lock:
            self._prune(self._clock())
            return {
                "requests_last_minute": len(self._minute_requests),
                "tokens_last_minute": self._token_total,
                "requests_last_day": len(self._day_requests),
            }

    def reset(self) -> None:
        with self._lock:
            self._minute_requests.clear()
            self._minute_tokens.clear()
            self._day_requests.clear()
            self._token_total = 0

    # -- internals (lock held) ---------------------------------------------

    def _fits(self, tokens: int) -> bool:
        if (
            self.requests_per_minute is not None
            and len(self._minute_requests) >= self.requests_per_minute
        ):
            return False
        if self.requests_per_day is not None and len(self._day_requests) >= self.requests_per_day:
            return False
        return not (
            self.tokens_per_minute is not None
            and self._token_total + tokens > self.tokens_per_minute
        )

    def _record(self, now: float, tokens: int) -> None:
        self._minute_requests.append(now)
        self._day_requests.append(now)
        if tokens:
            self._minute_tokens.append((now, tokens))
            self._token_total += tokens

    def _prune(self, now: float) -> None:
        while self._minute_requests and now - self._minute_requests[0] >= MINUTE:
            self._minute_requests.popleft()
        while self._day_requests and now - self._day_requests[0] >= DAY:
            self._day_requests.popleft()
        while self._minute_tokens and now - self._minute_tokens[0][0] >= MINUTE:
            _, count = self._minute_tokens.popleft()
            self._token_total -= count
