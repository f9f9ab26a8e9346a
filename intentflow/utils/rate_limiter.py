"""Rate limiting for AI synthesis and sandboxed execution.

Bounds cost and external-API pressure by capping reasoning-engine requests
and sandbox runs per session, independently of timeouts. Limits never
block: a spent budget is reported to the caller, which treats it as a
failed recovery attempt.
"""
import time
from collections import deque
from threading import Lock
from typing import Deque, Dict, Optional

from intentflow.errors import RateLimitExceeded
from intentflow.utils.logger import setup_logger


MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    """
    Thread-safe sliding-window budget.

    Usage:
        limiter = RateLimiter(calls_per_minute=10, name="ai:exec_1")
        limiter.require()           # raises RateLimitExceeded when spent
        if limiter.try_acquire():   # or check without raising
            ...
    """

    def __init__(self, calls_per_minute: int = 60, calls_per_hour: int = 1000, name: str = "default"):
        self.name = name
        self.calls_per_minute = calls_per_minute
        self.calls_per_hour = calls_per_hour

        # Timestamps of granted calls, oldest first
        self._minute_window: Deque[float] = deque()
        self._hour_window: Deque[float] = deque()
        self._lock = Lock()

        self._total_calls = 0
        self._times_rejected = 0

        self.logger = setup_logger(f"RateLimiter:{name}")

    @staticmethod
    def _evict(window: Deque[float], horizon: float):
        while window and window[0] < horizon:
            window.popleft()

    def _has_budget(self, now: float) -> bool:
        self._evict(self._minute_window, now - MINUTE)
        self._evict(self._hour_window, now - HOUR)
        return (len(self._minute_window) < self.calls_per_minute
                and len(self._hour_window) < self.calls_per_hour)

    def try_acquire(self) -> bool:
        """Spend one call if the budget allows it. Never waits."""
        with self._lock:
            now = time.monotonic()
            if not self._has_budget(now):
                self._times_rejected += 1
                return False
            self._minute_window.append(now)
            self._hour_window.append(now)
            self._total_calls += 1
            return True

    def require(self):
        """Spend one call or raise RateLimitExceeded."""
        if not self.try_acquire():
            self.logger.warning(f"Rate limit exceeded for {self.name} ({self.calls_per_minute}/min)")
            raise RateLimitExceeded(
                f"Rate limit exceeded for {self.name}: {self.calls_per_minute} calls per minute"
            )

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "name": self.name,
                "total_calls": self._total_calls,
                "times_rejected": self._times_rejected,
                "calls_in_last_minute": len(self._minute_window),
                "calls_in_last_hour": len(self._hour_window),
                "limits": {"per_minute": self.calls_per_minute, "per_hour": self.calls_per_hour},
            }


class RateLimiterManager:
    """
    One limiter per (purpose, session), so a noisy execution cannot spend
    another execution's budget.

    Usage:
        limiter = rate_limiters.for_session("ai", execution_id, calls_per_minute=10)
        limiter.require()
        ...
        rate_limiters.release_session(execution_id)
    """

    def __init__(self):
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = Lock()
        self.logger = setup_logger("RateLimiterManager")

    def for_session(
        self,
        purpose: str,
        session_id: str,
        calls_per_minute: int = 60,
        calls_per_hour: int = 1000
    ) -> RateLimiter:
        """Get or create the limiter for one session and purpose."""
        name = f"{purpose}:{session_id}"
        with self._lock:
            limiter = self._limiters.get(name)
            if limiter is None:
                limiter = RateLimiter(calls_per_minute, calls_per_hour, name=name)
                self._limiters[name] = limiter
                self.logger.debug(f"Created limiter {name} ({calls_per_minute}/min)")
            return limiter

    def release_session(self, session_id: str):
        """Drop all limiters belonging to a finished session."""
        suffix = f":{session_id}"
        with self._lock:
            for name in [n for n in self._limiters if n.endswith(suffix)]:
                del self._limiters[name]

    def get(self, name: str) -> Optional[RateLimiter]:
        with self._lock:
            return self._limiters.get(name)


# Shared manager; per-session limiters are created on demand
rate_limiters = RateLimiterManager()
