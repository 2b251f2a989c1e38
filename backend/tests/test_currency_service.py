"""
Tests for currency_service.py
==============================
Covers:
  - identical currencies short-circuit to 1.0
  - RPC parameters and per-(pair, date, tenant) caching
  - last-known fallback when the RPC fails, CurrencyError otherwise
  - convert_to_usd rounding and non-positive amounts
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from supabase_fakes import FakeSupabase
from cache_service import TTLCache
from currency_service import CurrencyError, CurrencyService


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _service(rate=None):
    sb = FakeSupabase()
    if rate is not None:
        sb.rpc_results["get_exchange_rate"] = rate
    return sb, CurrencyService(sb, cache=TTLCache(clock=_Clock()))


class TestExchangeRate:

    @pytest.mark.asyncio
    async def test_same_currency(self):
        sb, service = _service()
        assert await service.get_exchange_rate("USD", "USD") == 1.0
        assert sb.rpc_calls == []

    @pytest.mark.asyncio
    async def test_rpc_params_and_cache(self):
        sb, service = _service(rate="1.0825")

        assert await service.get_exchange_rate("EUR", "USD", "2025-05-01", tenant_id="t1") == 1.0825
        assert await service.get_exchange_rate("EUR", "USD", "2025-05-01", tenant_id="t1") == 1.0825

        assert sb.rpc_calls == [("get_exchange_rate", {
            "p_from_currency": "EUR",
            "p_to_currency": "USD",
            "p_date": "2025-05-01",
            "p_tenant_id": "t1",
        })]

    @pytest.mark.asyncio
    async def test_cache_is_per_tenant(self):
        sb, service = _service(rate=1.1)
        await service.get_exchange_rate("EUR", "USD", "2025-05-01", tenant_id="t1")
        await service.get_exchange_rate("EUR", "USD", "2025-05-01", tenant_id="t2")
        assert len(sb.rpc_calls) == 2

    @pytest.mark.asyncio
    async def test_missing_rate(self):
        _, service = _service()
        with pytest.raises(CurrencyError, match="No exchange rate found"):
            await service.get_exchange_rate("XYZ", "USD", "2025-05-01")

    @pytest.mark.asyncio
    async def test_rpc_failure_falls_back_to_last_known(self):
        sb, service = _service(rate=1.25)
        await service.get_exchange_rate("GBP", "USD", "2025-05-01")
        sb.rpc_results["get_exchange_rate"] = Exception("connection reset")

        assert await service.get_exchange_rate("GBP", "USD", "2025-05-02") == 1.25

    @pytest.mark.asyncio
    async def test_rpc_failure_without_history(self):
        sb, service = _service()
        sb.rpc_results["get_exchange_rate"] = Exception("connection reset")
        with pytest.raises(CurrencyError, match="Unable to get exchange rate"):
            await service.get_exchange_rate("GBP", "USD", "2025-05-01")


class TestConvertToUsd:

    @pytest.mark.asyncio
    async def test_converts_and_rounds_to_cents(self):
        _, service = _service(rate=1.0825)
        assert await service.convert_to_usd(99.99, "EUR", "2025-05-01") == 108.24

    @pytest.mark.asyncio
    async def test_missing_currency_is_usd(self):
        sb, service = _service()
        assert await service.convert_to_usd(10, None) == 10.0
        assert sb.rpc_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [None, 0, -5])
    async def test_non_positive_amounts(self, amount):
        _, service = _service(rate=2.0)
        assert await service.convert_to_usd(amount, "EUR") == 0.0
