"""
Sliding-window rate limiter, one instance per route family.

Keys are tenant ids (or client IPs for unauthenticated calls). Keys with no
hit inside the window are swept at most once per window, so idle tenants
do not accumulate. The clock is injected so limits can be tested without
sleeping.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# name → (max_requests, window_seconds)
RATE_LIMIT_CONFIGS = {
    "general": (100, 15 * 60),
    "download": (5, 60 * 60),
    "metrics": (30, 5 * 60),
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float = 0.0


class RateLimiter:
    """Sliding-window limiter (same shape as the CRM client rate limiters, but non-blocking)."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._requests = defaultdict(list)
        self._last_sweep = clock()

    @classmethod
    def from_config(cls, name: str, clock: Callable[[], float] = time.time) -> "RateLimiter":
        max_requests, window = RATE_LIMIT_CONFIGS[name]
        return cls(max_requests, window, clock=clock)

    def check(self, key: str = "default") -> RateLimitResult:
        """Record one request for `key` if allowed; never blocks."""
        now = self._clock()
        if now - self._last_sweep >= self.window:
            self._sweep(now)
        self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
        hits = self._requests[key]

        if len(hits) >= self.max_requests:
            reset_at = min(hits) + self.window
            logger.warning(f"Rate limit exceeded for {key} ({len(hits)}/{self.max_requests})")
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=max(0.0, reset_at - now))

        hits.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - len(hits),
            reset_at=min(hits) + self.window,
        )

    def _sweep(self, now: float) -> None:
        idle = [k for k, hits in self._requests.items() if not hits or now - hits[-1] >= self.window]
        for k in idle:
            del self._requests[k]
        self._last_sweep = now

    def tracked_keys(self) -> int:
        return len(self._requests)

    def reset(self, key: str = None):
        if key is None:
            self._requests.clear()
        else:
            self._requests.pop(key, None)
