"""
Auto-renewal rate
=================
Share of renewal opportunities (sbqq_renewal = true) closing in the window
whose quote is flagged auto_renew_quote.

The current, last-month and last-quarter windows are queried concurrently;
each window is a plain list read, the rate is computed in Python.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from db import run_db
from flow.period_calculator import DEFAULT_PERIOD_DAYS, Period, days_between, get_period_comparison
from metrics.status_thresholds import AUTO_RENEWED, get_metric_status, get_trend_direction, threshold_fields
from flow.percentage_change import calculate_percentage_change

logger = logging.getLogger(__name__)

OPPORTUNITIES_TABLE = "salesforce_opportunities"
METRIC_LABEL = "Auto-renewed opportunities (%)"

DETAIL_COLUMNS = (
    "id, name, close_date, stage_name, sbqq_renewal, auto_renew_quote, amount, "
    "currency_iso_code, customer_tier, customer_country, market_segment, lead_source, type"
)

# request key → salesforce_opportunities column (IN filter)
IN_FILTER_COLUMNS = {
    "customerTier": "customer_tier",
    "customerCountry": "customer_country",
    "marketSegment": "market_segment",
    "leadSource": "lead_source",
    "opportunityType": "type",
}


def _round2(value: float) -> float:
    return round(value, 2)


def rate_of(rows: list[dict]) -> tuple[int, int, float]:
    """(total, auto_renewed, rate %) for a window's rows."""
    total = len(rows)
    renewed = sum(1 for r in rows if r.get("auto_renew_quote") is True)
    return total, renewed, (renewed / total) * 100 if total else 0.0


def resolve_periods(filters: dict, today: date):
    """daysBack becomes a range ending today; an explicit range is the current window."""
    dr = dict(filters.get("dateRange") or {})
    days_back = filters.get("daysBack")
    if days_back and not (dr.get("from") and dr.get("to")):
        dr = {"from": (today - timedelta(days=int(days_back))).isoformat(), "to": today.isoformat()}

    if dr.get("from") and dr.get("to"):
        length = abs(days_between(dr["from"], dr["to"]))
        return get_period_comparison(Period.from_dict(dr), length, today=today)
    return get_period_comparison(None, DEFAULT_PERIOD_DAYS, today=today)


def _comparison_block(rate: float, renewed: int, prev_total: int, prev_renewed: int, prev_rate: float) -> dict:
    diff = _round2(rate - prev_rate)
    return {
        "avgDaysChange": diff,
        "performanceChange": 0,
        "recordCountChange": renewed - prev_renewed,
        "hasData": prev_total > 0,
        "previousAvgDays": _round2(prev_rate),
        "previousPerformance": 0,
        "previousRecordCount": prev_renewed,
        "avgDaysMetadata": {
            "current": _round2(rate),
            "previous": _round2(prev_rate),
            "change": diff,
        },
    }


async def _fetch_window(supabase, period: Period, filters: dict, columns: str, tenant_id: Optional[str]) -> list[dict]:
    def _q():
        q = (
            supabase.table(OPPORTUNITIES_TABLE)
            .select(columns)
            .eq("sbqq_renewal", True)
            .gte("close_date", period.start)
            .lte("close_date", period.end)
        )
        if tenant_id:
            q = q.eq("tenant_id", tenant_id)
        for key, column in IN_FILTER_COLUMNS.items():
            values = filters.get(key)
            if values:
                q = q.in_(column, list(values))
        return q.execute()

    result = await run_db(_q)
    return result.data or []


async def get_auto_renewal_rate(supabase, filters: Optional[dict] = None, today: Optional[date] = None,
                                tenant_id: Optional[str] = None) -> dict:
    filters = filters or {}
    today = today or date.today()
    periods = resolve_periods(filters, today)

    current_rows, month_rows, quarter_rows = await asyncio.gather(
        _fetch_window(supabase, periods.current, filters, DETAIL_COLUMNS, tenant_id),
        _fetch_window(supabase, periods.last_month, filters, "id, auto_renew_quote", tenant_id),
        _fetch_window(supabase, periods.last_quarter, filters, "id, auto_renew_quote", tenant_id),
    )

    total, renewed, rate = rate_of(current_rows)
    m_total, m_renewed, m_rate = rate_of(month_rows)
    q_total, q_renewed, q_rate = rate_of(quarter_rows)
    logger.info(f"Auto-renewal: {renewed}/{total} in {periods.current.start}..{periods.current.end}")

    change = calculate_percentage_change(rate, m_rate).change_percent
    return {
        "metric_name": METRIC_LABEL,
        "value": _round2(rate),
        **threshold_fields(AUTO_RENEWED),
        "status": get_metric_status(AUTO_RENEWED, rate, has_data=total > 0),
        "change_percent": change,
        "direction": get_trend_direction(change),
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "details": {
            "total_renewal_opportunities": total,
            "auto_renewed_opportunities": renewed,
            "auto_renewal_rate": _round2(rate),
            "calculation_date": today.isoformat(),
        },
        "vsLastMonth": _comparison_block(rate, renewed, m_total, m_renewed, m_rate),
        "vsLastQuarter": _comparison_block(rate, renewed, q_total, q_renewed, q_rate),
        "periods": periods.to_dict(),
        "detailed_data": current_rows,
    }
