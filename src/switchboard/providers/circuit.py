"""Per-provider circuit breaker.

Tracks call outcomes for one backend and fails fast while it is unhealthy,
so the router can skip a known-bad provider without paying its timeout.

State is held explicitly (``state`` plus the monotonic time of the last
transition) rather than inferred from history, and the clock is
injectable so tests can drive transitions deterministically.

Transitions:
    - CLOSED -> OPEN: ``failure_threshold`` consecutive failures, or a
      rolling error rate at or above ``error_rate_threshold`` once
      ``min_calls`` outcomes are in the window.
    - OPEN -> HALF_OPEN: ``recovery_time`` seconds after opening,
      evaluated lazily whenever the state is read.
    - HALF_OPEN -> CLOSED: a successful probe.
    - HALF_OPEN -> OPEN: a failed probe.

Typical usage::

    breaker = CircuitBreaker("openai", failure_threshold=3)
    if breaker.try_acquire():
        try:
            result = await call()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from switchboard.types import CircuitState

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """Circuit breaker for one backend.

    Thread-safe: every read and update takes the breaker's own lock, so
    different providers never contend with each other.

    Args:
        name: Identifier used in logs and transition callbacks.
        failure_threshold: Consecutive failures that open the circuit.
        window_size: Outcomes kept for the rolling error rate.
        min_calls: Outcomes required before the error rate is evaluated.
        error_rate_threshold: Rolling error rate that opens the circuit.
        recovery_time: Seconds to stay open before probing.
        half_open_max_calls: Concurrent probes allowed while half-open.
        clock: Monotonic time source in seconds.
        on_transition: Called as ``(name, old_state, new_state)`` after
            every transition. Exceptions are logged and swallowed.

    Attributes:
        name: Identifier for this circuit.
        opened_at: Monotonic time the circuit last opened, or None.
        last_transition_at: Monotonic time of the last transition.
        last_transition_wall: Wall-clock (UTC) time of the last transition.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        window_size: int = 20,
        min_calls: int = 10,
        error_rate_threshold: float = 0.5,
        recovery_time: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
        on_transition: TransitionListener | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.min_calls = min_calls
        self.error_rate_threshold = error_rate_threshold
        self.recovery_time = recovery_time
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._outcomes: deque[bool] = deque(maxlen=window_size)
        self._consecutive_failures = 0
        self._half_open_in_flight = 0
        self.opened_at: float | None = None
        self.last_transition_at: float = clock()
        self.last_transition_wall: datetime = datetime.now(UTC)

    # -- reads --------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once cool-down elapses."""
        with self._lock:
            return self._current_state()

    @property
    def error_rate(self) -> float:
        """Failure ratio over the rolling window; 0.0 when empty."""
        with self._lock:
            if not self._outcomes:
                return 0.0
            return self._outcomes.count(False) / len(self._outcomes)

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def retry_after(self) -> float:
        """Seconds until an open circuit will accept a probe; 0 otherwise."""
        with self._lock:
            if self._current_state() != CircuitState.OPEN or self.opened_at is None:
                return 0.0
            return max(0.0, self.opened_at + self.recovery_time - self._clock())

    def can_execute(self) -> bool:
        """Whether a call would currently be admitted, without reserving it."""
        with self._lock:
            state = self._current_state()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN:
                return self._half_open_in_flight < self.half_open_max_calls
            return False

    # -- updates ------------------------------------------------------------

    def try_acquire(self) -> bool:
        """Admit a call, reserving a probe slot when half-open.

        Returns:
            True if the call may proceed. The caller must then report
            exactly one of ``record_success``, ``record_failure``, or
            ``release``.
        """
        with self._lock:
            state = self._current_state()
            if state == CircuitState.CLOSED:
                return True
            if (
                state == CircuitState.HALF_OPEN
                and self._half_open_in_flight < self.half_open_max_calls
            ):
                self._half_open_in_flight += 1
                return True
            return False

    def release(self) -> None:
        """Give back an admitted call without recording an outcome.

        Used when the caller cancels; cancellation says nothing about
        backend health.
        """
        with self._lock:
            if self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            state = self._current_state()
            self._outcomes.append(True)
            self._consecutive_failures = 0
            if state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._outcomes.clear()
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            state = self._current_state()
            self._outcomes.append(False)
            self._consecutive_failures += 1
            if state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._transition(CircuitState.OPEN)
            elif state == CircuitState.CLOSED and self._should_trip():
                self._transition(CircuitState.OPEN)

    def force_open(self) -> None:
        """Open the circuit immediately (operator override)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Close the circuit and clear all counters."""
        with self._lock:
            self._outcomes.clear()
            self._consecutive_failures = 0
            self._half_open_in_flight = 0
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    # -- internals (lock held) ---------------------------------------------

    def _current_state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self.opened_at is not None
            and self._clock() - self.opened_at >= self.recovery_time
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _should_trip(self) -> bool:
        if self._consecutive_failures >= self.failure_threshold:
            return True
        if len(self._outcomes) < self.min_calls:
            return False
        rate = self._outcomes.count(False) / len(self._outcomes)
        return rate >= self.error_rate_threshold

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        now = self._clock()
        self.last_transition_at = now
        self.last_transition_wall = datetime.now(UTC)
        if new_state == CircuitState.OPEN:
            self.opened_at = now
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
        else:
            self.opened_at = None
            self._consecutive_failures = 0

        if new_state == CircuitState.OPEN:
            logger.warning("Circuit '%s' %s -> %s", self.name, old_state, new_state)
        else:
            logger.info("Circuit '%s' %s -> %s", self.name, old_state, new_state)

        if self._on_transition is not None:
            try:
                self._on_transition(self.name, old_state, new_state)
            except Exception:
                logger.exception("Circuit transition listener failed for '%s'", self.name)
