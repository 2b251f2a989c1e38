"""
In-process TTL cache.

One instance per concern (metrics responses, flow data, exchange rates, ...)
is built at startup in server.py and handed to whoever needs it. Entries are
evicted lazily on read. Past `max_entries` a write first drops expired
entries, then the oldest writes, so the map stays bounded however many
distinct filter combinations are requested.

The clock is injected so tests can advance time without sleeping.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Seconds
CACHE_TTL = {
    "METRICS": 2 * 60,
    "FLOW_DATA": 5 * 60,
    "RAW_DATA": 10 * 60,
    "CURRENCY": 5 * 60,
    "FILTER_OPTIONS": 30 * 60,
}

DEFAULT_MAX_ENTRIES = 1000


def build_cache_key(prefix: str, params: Optional[dict] = None) -> str:
    """Deterministic key: prefix + sorted JSON of params."""
    if not params:
        return prefix
    return f"{prefix}:{json.dumps(params, sort_keys=True, default=str)}"


class TTLCache:
    """Key → (value, expires_at) map with per-entry TTL."""

    def __init__(self, default_ttl: float = CACHE_TTL["METRICS"], clock: Callable[[], float] = time.monotonic,
                 max_entries: int = DEFAULT_MAX_ENTRIES):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        # re-insert so dict order stays oldest write first
        self._entries.pop(key, None)
        self._entries[key] = (value, now + (ttl if ttl is not None else self.default_ttl))
        if len(self._entries) > self.max_entries:
            self._evict_expired_at(now)
            while len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                logger.debug(f"Cache full, dropping {oldest}")
                del self._entries[oldest]

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def evict_expired(self) -> int:
        """Drop all expired entries. Returns how many were removed."""
        return self._evict_expired_at(self._clock())

    def _evict_expired_at(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
        for k in expired:
            del self._entries[k]
        return len(expired)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl: Optional[float] = None) -> Any:
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"Cache hit: {key}")
            return cached
        value = await loader()
        if value is not None:
            self.set(key, value, ttl)
        return value
