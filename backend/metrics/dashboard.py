"""
Unified Dashboard
=================
One read of mv_lead_to_cash_flow feeds all four stage cards.

The view is paged with a keyset on (opportunity_created_date, opportunity_id),
both DESC, because offset paging over the full view times out. The id breaks
ties so rows sharing a created date across a page boundary are not skipped. Rows are fetched once over [current.from - 90d, current.to] and
sliced into current / last month / last quarter windows in memory.

A row counts toward a stage only when the stage's has_* flags are true,
its duration is present and opportunity_amount_usd is present.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Optional

from db import run_db
from flow.filters import (
    DATE_COLUMN,
    LEAD_TO_CASH_COLUMNS,
    FlowFilters,
    apply_deal_size_filter,
    apply_filters,
    apply_speed_filter,
)
from flow.flow_data_service import FlowDataService, filter_data_by_date_range, period_length_days
from flow.percentage_change import calculate_percentage_change
from flow.period_calculator import LAST_QUARTER_DAYS, Period, get_period_comparison, parse_date
from metrics.status_thresholds import (
    INVOICE_TO_PAYMENT,
    OPPORTUNITY_TO_QUOTE_TIME,
    ORDER_TO_CASH_TIME,
    QUOTE_TO_ORDER,
    get_metric_status,
    threshold_fields,
)

logger = logging.getLogger(__name__)

LEAD_TO_CASH_VIEW = "mv_lead_to_cash_flow"
KEY_COLUMN = "opportunity_id"
KEYSET_PAGE_SIZE = 1000
MAX_KEYSET_PAGES = 500

COLUMNS = (
    "opportunity_id, opportunity_name, opportunity_amount_usd, opportunity_stage_name, "
    "opportunity_type, opportunity_lead_source, opportunity_created_date, customer_tier, "
    "customer_market_segment, customer_country, customer_sales_channel, has_quote, has_order, "
    "has_invoice, has_payment, days_to_quote, days_quote_to_order, days_order_to_invoice, "
    "days_invoice_to_payment, quote_created_date, quote_name, order_created_date, order_name, "
    "invoice_transaction_id, invoice_created_date, invoice_customer_name, payment_application_date, "
    "quote_status, order_status, invoice_status, quote_total_amount_usd, order_total_amount_usd, "
    "invoice_total_amount_usd"
)

# (card title, status metric, duration column, required flags)
STAGES = [
    ("Opportunity to Quote", OPPORTUNITY_TO_QUOTE_TIME, "days_to_quote", ("has_quote",)),
    ("Quote to Order", QUOTE_TO_ORDER, "days_quote_to_order", ("has_quote", "has_order")),
    ("Order to Invoice", ORDER_TO_CASH_TIME, "days_order_to_invoice", ("has_order", "has_invoice")),
    ("Invoice to Payment", INVOICE_TO_PAYMENT, "days_invoice_to_payment", ("has_invoice", "has_payment")),
]

FILTER_OPTION_FIELDS = {
    "customerTiers": "customer_tier",
    "productTypes": "customer_market_segment",
    "geolocations": "customer_country",
    "stages": "opportunity_stage_name",
    "leadTypes": "opportunity_lead_source",
    "customerTypes": "opportunity_type",
    "salesChannels": "customer_sales_channel",
}


def valid_stage_rows(rows: list[dict], duration_field: str, flags: tuple) -> list[dict]:
    return [
        r for r in rows
        if all(r.get(f) is True for f in flags)
        and r.get(duration_field) is not None
        and r.get("opportunity_amount_usd") is not None
    ]


def _average(rows: list[dict], field: str) -> float:
    if not rows:
        return 0.0
    return sum(float(r[field]) for r in rows) / len(rows)


def extract_filter_options(rows: list[dict]) -> dict:
    """Sorted distinct non-empty values per filterable dimension."""
    options = {}
    for key, column in FILTER_OPTION_FIELDS.items():
        values = {str(r[column]) for r in rows if r.get(column) not in (None, "")}
        options[key] = sorted(values)
    return options


def _compare(current_avg: float, current_rows: list, previous_rows: list, duration_field: str) -> dict:
    previous_avg = _average(previous_rows, duration_field)
    change = calculate_percentage_change(current_avg, previous_avg)
    return {
        "avgDaysChange": current_avg - previous_avg,
        "hasData": bool(previous_rows),
        "previousAvgDays": previous_avg,
        "previousRecordCount": len(previous_rows),
        "avgDaysMetadata": change.to_dict(),
    }


def _detail_rows(title: str, rows: list[dict]) -> list[dict]:
    if title == "Opportunity to Quote":
        return [
            {
                "id": r.get("opportunity_id") or "",
                "opportunity": r.get("opportunity_name") or "",
                "startDate": r.get("opportunity_created_date") or "",
                "endDate": r.get("quote_created_date") or "",
                "duration": r.get("days_to_quote") or 0,
                "opportunityAmountUSD": r.get("opportunity_amount_usd") or 0,
                "region": r.get("customer_country") or "",
                "status": r.get("opportunity_stage_name") or "",
            }
            for r in rows
        ]
    if title == "Quote to Order":
        return [
            {
                "id": r.get("quote_name") or "",
                "opportunity": r.get("opportunity_name") or "",
                "startDate": r.get("quote_created_date") or "",
                "endDate": r.get("order_created_date") or "",
                "duration": r.get("days_quote_to_order") or 0,
                "opportunityAmountUSD": r.get("opportunity_amount_usd") or 0,
                "orderTotalAmountUSD": r.get("order_total_amount_usd") or 0,
                "region": r.get("customer_country") or "",
                "status": r.get("order_status") or "",
            }
            for r in rows
        ]
    if title == "Order to Invoice":
        return [
            {
                "opportunity": r.get("order_name") or "",
                "invoice_number": r.get("invoice_transaction_id") or "",
                "startDate": r.get("order_created_date") or "",
                "invoice_date": r.get("invoice_created_date") or "",
                "duration": r.get("days_order_to_invoice") or 0,
                "orderTotalUSD": r.get("order_total_amount_usd") or 0,
                "invoiceTotalUSD": r.get("invoice_total_amount_usd") or 0,
                "dealSize": r.get("opportunity_amount_usd") or 0,
                "region": r.get("customer_country") or "",
            }
            for r in rows
        ]
    return [
        {
            "opportunity": r.get("invoice_transaction_id") or "",
            "startDate": r.get("invoice_created_date") or "",
            "endDate": r.get("payment_application_date") or "",
            "duration": r.get("days_invoice_to_payment") or 0,
            "invoiceTotalUSD": r.get("invoice_total_amount_usd") or 0,
            "region": r.get("invoice_customer_name") or "",
            "status": r.get("invoice_status") or "",
        }
        for r in rows
    ]


def build_stage_cards(current_rows: list[dict], last_month_rows: list[dict], last_quarter_rows: list[dict]) -> tuple[list[dict], dict]:
    stages = []
    detailed = {}
    for title, metric_name, duration_field, flags in STAGES:
        current = valid_stage_rows(current_rows, duration_field, flags)
        last_month = valid_stage_rows(last_month_rows, duration_field, flags)
        last_quarter = valid_stage_rows(last_quarter_rows, duration_field, flags)

        avg = _average(current, duration_field)
        stages.append({
            "stage": title,
            "metric_name": metric_name,
            "avgDays": avg,
            "value": round(avg, 1),
            "status": get_metric_status(metric_name, avg, has_data=bool(current)),
            **threshold_fields(metric_name),
            "recordCount": len(current),
            "vsLastMonth": _compare(avg, current, last_month, duration_field),
            "vsLastQuarter": _compare(avg, current, last_quarter, duration_field),
        })
        detailed[title] = _detail_rows(title, current)
    return stages, detailed


def dashboard_periods(filters: FlowFilters, today: date):
    """Current window (explicit range or last P days) plus the fetch window."""
    length = period_length_days(filters)
    dr = filters.date_range or {}
    current = None
    if dr.get("from") and dr.get("to"):
        current = Period.from_dict(dr)
    periods = get_period_comparison(current, length, today=today)
    fetch_from = parse_date(periods.current.start) - timedelta(days=LAST_QUARTER_DAYS)
    return periods, Period(start=fetch_from.isoformat(), end=periods.current.end)


def keyset_filter(created: str, key: str) -> str:
    """PostgREST or-filter for rows after (created, key) in DESC order."""
    return (
        f'{DATE_COLUMN}.lt."{created}",'
        f'and({DATE_COLUMN}.eq."{created}",{KEY_COLUMN}.lt."{key}")'
    )


async def fetch_lead_to_cash_rows(service: FlowDataService, filters: FlowFilters, window: Period) -> list[dict]:
    scoped = filters.with_date_range(window.start, window.end)

    def _base():
        q = service.supabase.table(LEAD_TO_CASH_VIEW).select(COLUMNS)
        q = apply_filters(q, scoped, columns=LEAD_TO_CASH_COLUMNS)
        q = apply_deal_size_filter(q, scoped, "opportunity_amount_usd")
        q = apply_speed_filter(q, scoped)
        return service._scoped(q)

    async def _fetch() -> list[dict]:
        rows: list[dict] = []
        cursor: Optional[tuple[str, str]] = None
        for _ in range(MAX_KEYSET_PAGES):
            def _page(after=cursor):
                q = _base().order(DATE_COLUMN, desc=True).order(KEY_COLUMN, desc=True)
                if after:
                    q = q.or_(keyset_filter(*after))
                return q.limit(KEYSET_PAGE_SIZE).execute()

            result = await run_db(_page)
            batch = result.data or []
            if not batch:
                break
            rows.extend(batch)
            if len(batch) < KEYSET_PAGE_SIZE:
                break
            last = batch[-1]
            if not last.get(DATE_COLUMN) or last.get(KEY_COLUMN) is None:
                raise ValueError(f"{LEAD_TO_CASH_VIEW}: row without {DATE_COLUMN}/{KEY_COLUMN}, cannot page further")
            cursor = (last[DATE_COLUMN], str(last[KEY_COLUMN]))
        else:
            logger.warning(f"{LEAD_TO_CASH_VIEW}: stopped after {MAX_KEYSET_PAGES} pages ({len(rows)} rows)")
        return rows

    return await service.retry_policy.run(_fetch)


async def get_dashboard_unified(service: FlowDataService, filters: FlowFilters) -> dict:
    periods, window = dashboard_periods(filters, service.today())
    rows = await fetch_lead_to_cash_rows(service, filters, window)
    logger.info(f"Dashboard: {len(rows)} rows from {window.start} to {window.end}")

    def _slice(period: Period) -> list[dict]:
        return filter_data_by_date_range(rows, period.start, period.end)

    current_rows = _slice(periods.current)
    stages, detailed = build_stage_cards(current_rows, _slice(periods.last_month), _slice(periods.last_quarter))

    return {
        "success": True,
        "data": {"stages": stages, "detailed_data": detailed},
        "periods": periods.to_dict(),
        "totalRecords": len(current_rows),
        "filterOptions": extract_filter_options(rows),
    }
