"""Sliding-window rate limiting for the tool layer.

One budget is shared by every operation kind. Optional per-risk-class
tiers can be layered on top; a call must fit in both its tier and the
global budget, and is recorded in both only when it fits.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum

from autopilot.core.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class RiskClass(str, Enum):
    """Risk class of a tool operation."""

    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"  # shell and database


class _Window:
    """Timestamps of operations inside a rolling window. Not thread-safe."""

    def __init__(self, max_operations: int, window_seconds: float):
        if max_operations < 1:
            raise ValueError("max_operations must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_operations = max_operations
        self.window_seconds = window_seconds
        self._calls: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    def remaining(self, now: float) -> int:
        self._evict(now)
        return max(0, self.max_operations - len(self._calls))

    def retry_after(self, now: float) -> float:
        if not self._calls:
            return 0.0
        return max(0.0, self.window_seconds - (now - self._calls[0]))

    def record(self, now: float) -> None:
        self._calls.append(now)

    def clear(self) -> None:
        self._calls.clear()


class RateLimiter:
    """Thread-safe sliding-window limiter with optional risk tiers.

    Args:
        max_operations: Global budget per window.
        window_seconds: Length of the rolling window.
        tiers: Optional ``{risk_class: (max_operations, window_seconds)}``.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_operations: int = 100,
        window_seconds: float = 60.0,
        tiers: dict[RiskClass, tuple[int, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._global = _Window(max_operations, window_seconds)
        self._tiers = {
            RiskClass(name): _Window(int(limit), float(window))
            for name, (limit, window) in (tiers or {}).items()
        }
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def max_operations(self) -> int:
        return self._global.max_operations

    @property
    def window_seconds(self) -> float:
        return self._global.window_seconds

    def limits(self) -> tuple[tuple[int, float], dict[RiskClass, tuple[int, float]]]:
        """Configured global and per-tier ``(max_operations, window_seconds)``."""
        return (
            (self._global.max_operations, self._global.window_seconds),
            {risk: (w.max_operations, w.window_seconds) for risk, w in self._tiers.items()},
        )

    def acquire(self, risk: RiskClass = RiskClass.READ) -> int:
        """Consume one operation from the budget.

        Returns:
            Remaining global budget after this call.

        Raises:
            RateLimitExceeded: Budget exhausted; nothing was consumed.
        """
        with self._lock:
            now = self._clock()
            remaining = self._global.remaining(now)
            if remaining == 0:
                raise RateLimitExceeded(
                    f"Rate limit exceeded. Max {self._global.max_operations} operations "
                    f"per {self._global.window_seconds:g}s. Remaining: 0",
                    remaining=0,
                    retry_after=self._global.retry_after(now),
                )

            tier = self._tiers.get(risk)
            if tier is not None and tier.remaining(now) == 0:
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {risk.value} operations. "
                    f"Max {tier.max_operations} per {tier.window_seconds:g}s. "
                    f"Remaining: {remaining}",
                    remaining=remaining,
                    retry_after=tier.retry_after(now),
                )

            self._global.record(now)
            if tier is not None:
                tier.record(now)
            return remaining - 1

    def remaining(self, risk: RiskClass | None = None) -> int:
        with self._lock:
            now = self._clock()
            if risk is not None and risk in self._tiers:
                return min(self._global.remaining(now), self._tiers[risk].remaining(now))
            return self._global.remaining(now)

    def reset(self) -> None:
        with self._lock:
            self._global.clear()
            for tier in self._tiers.values():
                tier.clear()


_shared_limiter: RateLimiter | None = None
_shared_lock = threading.Lock()


def get_shared_rate_limiter(
    max_operations: int = 100,
    window_seconds: float = 60.0,
    tiers: dict[RiskClass, tuple[int, float]] | None = None,
) -> RateLimiter:
    """Process-wide limiter. Arguments apply only on first creation.

    Later calls asking for different limits get the existing limiter
    and a warning.
    """
    global _shared_limiter
    with _shared_lock:
        if _shared_limiter is None:
            _shared_limiter = RateLimiter(max_operations, window_seconds, tiers)
            logger.debug(
                f"Created shared rate limiter: {max_operations} ops / {window_seconds}s"
            )
        elif _shared_limiter.limits() != RateLimiter(max_operations, window_seconds, tiers).limits():
            logger.warning(
                f"Shared rate limiter already configured with "
                f"{_shared_limiter.max_operations} ops / {_shared_limiter.window_seconds:g}s; "
                f"ignoring requested {max_operations} ops / {window_seconds:g}s "
                f"(tiers: {sorted(r.value for r in (tiers or {}))})"
            )
        return _shared_limiter
