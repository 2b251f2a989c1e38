"""Timeout wrapper for store queries.

The in-flight query is not cancelled server-side; the caller just stops
waiting for it.
"""
import asyncio
import logging
import os
from typing import Any, Awaitable

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = float(os.environ.get("QUERY_TIMEOUT_SECONDS", "10"))

# Ingestion jobs run with the admin client and are allowed much longer
ADMIN_QUERY_TIMEOUT = 5 * 60


class QueryTimeoutError(TimeoutError):
    """Raised when a query does not finish within its budget."""
    pass


async def with_timeout(awaitable: Awaitable[Any], seconds: float = DEFAULT_QUERY_TIMEOUT, label: str = "query") -> Any:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error(f"{label} timed out after {seconds}s")
        raise QueryTimeoutError(f"{label} timed out after {seconds}s")
