"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

from switchboard.config import RateLimitConfig
from switchboard.providers.rate_limit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


class TestRequestLimits:
    """Requests per minute and per day."""

    def test_unlimited_by_default(self) -> None:
        limiter = RateLimiter()
        assert not limiter.is_limited
        for _ in range(1000):
            assert limiter.try_acquire(tokens=10_000)

    def test_rpm_blocks_then_recovers(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(requests_per_minute=2, clock=clock)
        assert limiter.try_acquire()
        clock.now += 10
        assert limiter.try_acquire()
        assert not limiter.can_make_request()
        assert not limiter.try_acquire()
        assert limiter.wait_time_ms() == 50_000
        clock.now += 50
        assert limiter.can_make_request()

    def test_rpd_limit(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(requests_per_day=1, clock=clock)
        assert limiter.try_acquire()
        clock.now += 3600
        assert not limiter.can_make_request()
        clock.now += 86_400
        assert limiter.can_make_request()

    def test_rejected_request_is_not_recorded(self) -> None:
        limiter = RateLimiter(requests_per_minute=1, clock=FakeClock())
        limiter.try_acquire()
        limiter.try_acquire()
        assert limiter.usage()["requests_last_minute"] == 1


class TestTokenLimits:
    """Tokens per minute."""

    def test_tpm_counts_tokens(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(tokens_per_minute=1000, clock=clock)
        assert limiter.try_acquire(tokens=600)
        assert not limiter.can_make_request(tokens=500)
        assert limiter.can_make_request(tokens=400)
        assert limiter.wait_time_ms(tokens=500) == 60_000
        clock.now += 60
        assert limiter.can_make_request(tokens=1000)

    def test_record_request_bypasses_check(self) -> None:
        limiter = RateLimiter(tokens_per_minute=100, clock=FakeClock())
        limiter.record_request(tokens=500)
        assert limiter.usage()["tokens_last_minute"] == 500
        assert not limiter.can_make_request()

    def test_reset_clears_windows(self) -> None:
        limiter = RateLimiter(requests_per_minute=1, clock=FakeClock())
        limiter.try_acquire(tokens=5)
        limiter.reset()
        assert limiter.usage() == {
            "requests_last_minute": 0,
            "tokens_last_minute": 0,
            "requests_last_day": 0,
        }


class TestFromConfig:
    def test_none_is_unlimited(self) -> None:
        assert not RateLimiter.from_config(None).is_limited

    def test_copies_limits(self) -> None:
        limiter = RateLimiter.from_config(
            RateLimitConfig(requests_per_minute=30, tokens_per_minute=9000)
        )
        assert limiter.is_limited
        assert limiter.requests_per_minute == 30
        assert limiter.tokens_per_minute == 9000
        assert limiter.requests_per_day is None
