"""
Exchange rates from the store.

Rates come from the `get_exchange_rate` RPC (exchange_rates table, latest
effective rate on or before the given date). Successful lookups are cached
for 30 minutes per (from, to, date, tenant). When the RPC fails and a
previous rate for the same pair is known, that rate is used and a warning
is logged.
"""

import logging
from datetime import date
from typing import Optional

from cache_service import TTLCache
from db import run_db

logger = logging.getLogger(__name__)

RATE_CACHE_TTL = 30 * 60
DEFAULT_TENANT = "default"


class CurrencyError(Exception):
    """No usable exchange rate."""
    pass


class CurrencyService:
    def __init__(self, supabase, cache: Optional[TTLCache] = None):
        self.supabase = supabase
        self.cache = cache or TTLCache(default_ttl=RATE_CACHE_TTL)
        self._last_known: dict[tuple, float] = {}

    async def get_exchange_rate(self, from_currency: str, to_currency: str = "USD",
                                on_date: Optional[str] = None, tenant_id: str = DEFAULT_TENANT) -> float:
        if from_currency == to_currency:
            return 1.0

        on_date = on_date or date.today().isoformat()
        key = f"fx:{from_currency}:{to_currency}:{on_date}:{tenant_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            result = await run_db(
                lambda: self.supabase.rpc("get_exchange_rate", {
                    "p_from_currency": from_currency,
                    "p_to_currency": to_currency,
                    "p_date": on_date,
                    "p_tenant_id": tenant_id,
                }).execute()
            )
            rate = result.data
        except Exception as e:
            stale = self._last_known.get((from_currency, to_currency))
            if stale is None:
                raise CurrencyError(f"Unable to get exchange rate for {from_currency} to {to_currency}: {e}") from e
            logger.warning(f"Exchange rate lookup failed, using last known {from_currency}->{to_currency}: {e}")
            return stale

        if rate is None:
            raise CurrencyError(f"No exchange rate found for {from_currency} to {to_currency}")

        rate = float(rate)
        self.cache.set(key, rate, RATE_CACHE_TTL)
        self._last_known[(from_currency, to_currency)] = rate
        return rate

    async def convert_to_usd(self, amount: Optional[float], currency: Optional[str],
                             on_date: Optional[str] = None, tenant_id: str = DEFAULT_TENANT) -> float:
        """Amount in USD rounded to cents; non-positive amounts convert to 0."""
        if not amount or amount <= 0:
            return 0.0
        rate = await self.get_exchange_rate(currency or "USD", "USD", on_date, tenant_id)
        return round(amount * rate, 2)
