"""
Retry Policy
============
One reusable retry loop for every call site that talks to Supabase,
Salesforce or NetSuite.

A policy is three knobs:
  max_attempts: total tries including the first one
  backoff: attempt number (1-based) → seconds to sleep before the next try
  retryable: exception → bool; non-retryable errors propagate immediately

Usage:
    policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0),
                         retryable=is_statement_timeout)
    rows = await policy.run(lambda: fetch_page(...))
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Postgres error codes surfaced by PostgREST
STATEMENT_TIMEOUT_CODE = "57014"
ROW_AFFECTED_TWICE_CODE = "21000"


def linear_backoff(base: float = 1.0) -> Callable[[int], float]:
    """attempt × base seconds (1s, 2s, 3s ...)."""
    return lambda attempt: base * attempt


def exponential_backoff(base: float = 1.0, jitter: float = 0.0) -> Callable[[int], float]:
    """base · 2^(attempt-1) seconds, plus up to `jitter` random seconds."""
    def _delay(attempt: int) -> float:
        extra = random.uniform(0, jitter) if jitter else 0.0
        return base * (2 ** (attempt - 1)) + extra
    return _delay


def error_code(exc: BaseException) -> str:
    """Best-effort extraction of a Postgres/PostgREST error code."""
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("code") or "")
    return ""


def is_statement_timeout(exc: BaseException) -> bool:
    return error_code(exc) == STATEMENT_TIMEOUT_CODE or "statement timeout" in str(exc).lower()


def is_row_affected_twice(exc: BaseException) -> bool:
    return error_code(exc) == ROW_AFFECTED_TWICE_CODE or "cannot affect row a second time" in str(exc)


def is_bad_gateway(exc: BaseException) -> bool:
    message = str(exc)
    return "502" in message or "Bad Gateway" in message


def is_transient_http_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=linear_backoff)
    retryable: Callable[[BaseException], bool] = lambda exc: True
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    label: str = "operation"

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Await `fn()` until it succeeds, fails permanently or runs out of attempts."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self.retryable(e):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    f"{self.label} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self.sleep(delay)
