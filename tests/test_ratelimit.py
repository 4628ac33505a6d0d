"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import logging
import threading

import pytest

from autopilot.core import ratelimit
from autopilot.core.errors import RateLimitExceeded
from autopilot.core.ratelimit import RateLimiter, RiskClass, get_shared_rate_limiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Global Budget
# =============================================================================


class TestGlobalBudget:
    """Tests for the shared operation budget."""

    def test_acquire_returns_remaining(self):
        limiter = RateLimiter(3, 60, clock=FakeClock())
        assert limiter.acquire() == 2
        assert limiter.acquire() == 1
        assert limiter.acquire() == 0

    def test_n_plus_one_call_rejected(self):
        clock = FakeClock()
        limiter = RateLimiter(5, 60, clock=clock)
        for _ in range(5):
            limiter.acquire()

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.acquire()
        assert exc_info.value.remaining == 0
        assert exc_info.value.retry_after == pytest.approx(60)
        assert "Max 5 operations per 60s" in str(exc_info.value)

    def test_budget_returns_after_window(self):
        clock = FakeClock()
        limiter = RateLimiter(2, 60, clock=clock)
        limiter.acquire()
        clock.advance(30)
        limiter.acquire()

        with pytest.raises(RateLimitExceeded):
            limiter.acquire()

        # First call leaves the window; second is still inside it
        clock.advance(30)
        assert limiter.remaining() == 1
        assert limiter.acquire() == 0

    def test_rejected_call_consumes_nothing(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 10, clock=clock)
        limiter.acquire()
        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                limiter.acquire()
        clock.advance(10)
        assert limiter.remaining() == 1

    def test_reset(self):
        limiter = RateLimiter(1, 60, clock=FakeClock())
        limiter.acquire()
        limiter.reset()
        assert limiter.remaining() == 1

    @pytest.mark.parametrize("max_ops,window", [(0, 60), (5, 0)])
    def test_invalid_limits(self, max_ops, window):
        with pytest.raises(ValueError):
            RateLimiter(max_ops, window)


# =============================================================================
# Risk Tiers
# =============================================================================


class TestRiskTiers:
    """Tests for optional per-risk-class budgets."""

    def test_tier_limits_its_class_only(self):
        clock = FakeClock()
        limiter = RateLimiter(100, 60, tiers={RiskClass.EXECUTE: (1, 60)}, clock=clock)
        limiter.acquire(RiskClass.EXECUTE)

        with pytest.raises(RateLimitExceeded, match="execute"):
            limiter.acquire(RiskClass.EXECUTE)
        limiter.acquire(RiskClass.READ)

    def test_tier_rejection_reports_global_remaining(self):
        limiter = RateLimiter(10, 60, tiers={RiskClass.WRITE: (1, 60)}, clock=FakeClock())
        limiter.acquire(RiskClass.WRITE)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.acquire(RiskClass.WRITE)
        assert exc_info.value.remaining == 9

    def test_remaining_is_min_of_tier_and_global(self):
        limiter = RateLimiter(10, 60, tiers={RiskClass.WRITE: (2, 60)}, clock=FakeClock())
        assert limiter.remaining(RiskClass.WRITE) == 2
        assert limiter.remaining(RiskClass.READ) == 10

    def test_tier_calls_count_against_global(self):
        limiter = RateLimiter(2, 60, tiers={RiskClass.WRITE: (5, 60)}, clock=FakeClock())
        limiter.acquire(RiskClass.WRITE)
        limiter.acquire(RiskClass.WRITE)
        with pytest.raises(RateLimitExceeded):
            limiter.acquire(RiskClass.READ)


# =============================================================================
# Concurrency and the Shared Limiter
# =============================================================================


class TestConcurrency:
    """Tests for atomic budget accounting across threads."""

    def test_exactly_budget_calls_succeed_under_contention(self):
        limiter = RateLimiter(20, 60)
        start = threading.Barrier(32)
        granted: list[int] = []
        rejected: list[RateLimitExceeded] = []
        lock = threading.Lock()

        def worker():
            start.wait()
            try:
                remaining = limiter.acquire(RiskClass.WRITE)
            except RateLimitExceeded as e:
                with lock:
                    rejected.append(e)
            else:
                with lock:
                    granted.append(remaining)

        threads = [threading.Thread(target=worker) for _ in range(32)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 20
        assert len(rejected) == 12
        assert sorted(granted) == list(range(20))
        assert limiter.remaining() == 0


class TestSharedLimiter:
    """Tests for the process-wide limiter."""

    @pytest.fixture(autouse=True)
    def fresh_shared(self, monkeypatch):
        monkeypatch.setattr(ratelimit, "_shared_limiter", None)

    def test_same_instance_returned(self):
        assert get_shared_rate_limiter(5, 60) is get_shared_rate_limiter(5, 60)

    def test_matching_limits_do_not_warn(self, caplog):
        get_shared_rate_limiter(5, 60, {RiskClass.WRITE: (1, 60)})
        with caplog.at_level(logging.WARNING, logger="autopilot.core.ratelimit"):
            get_shared_rate_limiter(5, 60.0, {RiskClass.WRITE: (1, 60)})
        assert caplog.records == []

    @pytest.mark.parametrize(
        "args",
        [(10, 60, None), (5, 30, None), (5, 60, {RiskClass.EXECUTE: (1, 60)})],
    )
    def test_different_limits_warn_and_keep_first(self, caplog, args):
        first = get_shared_rate_limiter(5, 60)
        with caplog.at_level(logging.WARNING, logger="autopilot.core.ratelimit"):
            again = get_shared_rate_limiter(*args)
        assert again is first
        assert again.max_operations == 5
        assert "already configured with 5 ops / 60s" in caplog.text
