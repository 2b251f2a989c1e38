"""
Flow Data Service
=================
Reads the precomputed join views and produces stage metrics for the
dashboard's lead-to-cash flow.

Views
-----
  mv_opportunity_quote_pairs_optimized   opportunity ↔ primary quote
  mv_quote_order_pairs_optimized         quote ↔ order
  mv_invoice_payment_pairs_optimized     invoice ↔ payment

The application never joins anything itself: it filters, pages and
aggregates rows that the views already paired.

Paging
------
  PAGE_SIZE rows per request ordered by opportunity_created_date DESC.
  A short page ends the loop; MAX_PAGES is a hard ceiling.

Retries
-------
  A Postgres statement timeout (57014) retries the whole fetch through
  RetryPolicy (3 attempts, attempt × 1s). Anything else surfaces as
  FlowDataError immediately.

IMPORTANT: supabase-py is synchronous, so every .execute() goes through
db.run_db().
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Optional

from db import run_db
from flow.filters import (
    DATE_COLUMN,
    FlowFilters,
    apply_deal_size_filter,
    apply_filters,
    apply_speed_filter,
)
from flow.flow_metrics import (
    INVOICE_TO_PAYMENT,
    FlowData,
    calculate_trend_comparisons,
    compare_stage,
    compute_stage_stats,
    invoice_to_payment_detail,
    process_flow_data,
)
from flow.period_calculator import (
    DEFAULT_PERIOD_DAYS,
    Period,
    PeriodComparison,
    days_between,
    get_extended_date_range,
    get_period_comparison,
)
from retry_policy import RetryPolicy, is_statement_timeout, linear_backoff

logger = logging.getLogger(__name__)

PAGE_SIZE = 10_000
MAX_PAGES = 1000
FETCH_ATTEMPTS = 3

REFRESH_PROBABILITY = float(os.environ.get("FLOW_REFRESH_PROBABILITY", "0.05"))

OPPORTUNITY_QUOTE_VIEW = "mv_opportunity_quote_pairs_optimized"
QUOTE_ORDER_VIEW = "mv_quote_order_pairs_optimized"
ORDER_INVOICE_VIEW = "mv_order_invoice_pairs_with_invoices_only"
INVOICE_PAYMENT_VIEW = "mv_invoice_payment_pairs_optimized"

MATERIALIZED_VIEWS = [
    OPPORTUNITY_QUOTE_VIEW,
    QUOTE_ORDER_VIEW,
    ORDER_INVOICE_VIEW,
    INVOICE_PAYMENT_VIEW,
]

INVOICES_TABLE = "netsuite_raw_invoices"
CREDIT_MEMOS_TABLE = "netsuite_credit_memos"
DETAIL_ROW_LIMIT = 1000


class FlowDataError(Exception):
    """Store failure while reading flow views."""
    pass


def _statement_timeout_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=FETCH_ATTEMPTS,
        backoff=linear_backoff(1.0),
        retryable=is_statement_timeout,
        label="flow view fetch",
    )


def _parse_row_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def filter_data_by_date_range(rows: list[dict], start: str, end: str, field: str = DATE_COLUMN) -> list[dict]:
    """Rows whose `field` falls in [start 00:00, end 23:59:59.999999]."""
    lower = datetime.combine(date.fromisoformat(start[:10]), time.min)
    upper = datetime.combine(date.fromisoformat(end[:10]), time.max)
    out = []
    for r in rows:
        dt = _parse_row_datetime(r.get(field))
        if dt is not None and lower <= dt <= upper:
            out.append(r)
    return out


def period_length_days(filters: FlowFilters) -> int:
    """P from an explicit date range, else daysBack, else the default."""
    dr = filters.date_range or {}
    if dr.get("from") and dr.get("to"):
        return abs(days_between(dr["from"], dr["to"]))
    if filters.days_back:
        return int(filters.days_back)
    return DEFAULT_PERIOD_DAYS


class FlowDataService:
    """Filtered, paginated reads of the flow views plus stage aggregation."""

    def __init__(
        self,
        supabase,
        retry_policy: Optional[RetryPolicy] = None,
        refresh_probability: float = REFRESH_PROBABILITY,
        random_fn: Callable[[], float] = random.random,
        today: Optional[date] = None,
        tenant_id: Optional[str] = None,
    ):
        self.supabase = supabase
        self.retry_policy = retry_policy or _statement_timeout_policy()
        self.refresh_probability = refresh_probability
        self._random = random_fn
        self._today = today
        self.tenant_id = tenant_id

    def today(self) -> date:
        return self._today or date.today()

    def _scoped(self, q):
        """Restrict a query to this service's tenant."""
        if self.tenant_id:
            q = q.eq("tenant_id", self.tenant_id)
        return q

    # ------------------------------------------------------------------
    # Paged view reads
    # ------------------------------------------------------------------

    async def _fetch_all_pages(self, view: str, build_query: Callable[[], Any], order_column: str = DATE_COLUMN) -> list[dict]:
        async def _fetch() -> list[dict]:
            rows: list[dict] = []
            for page in range(MAX_PAGES):
                offset = page * PAGE_SIZE
                result = await run_db(
                    lambda o=offset: build_query()
                    .order(order_column, desc=True)
                    .range(o, o + PAGE_SIZE - 1)
                    .execute()
                )
                batch = result.data or []
                rows.extend(batch)
                if len(batch) < PAGE_SIZE:
                    break
            else:
                logger.warning(f"{view}: hit MAX_PAGES ({MAX_PAGES}), result truncated at {len(rows)} rows")
            return rows

        try:
            rows = await self.retry_policy.run(_fetch)
        except Exception as e:
            logger.error(f"Fetch from {view} failed: {e}")
            raise FlowDataError(f"Failed to fetch {view}: {e}") from e
        logger.info(f"Fetched {len(rows)} rows from {view}")
        return rows

    async def fetch_opportunity_to_quote_data(self, filters: FlowFilters) -> list[dict]:
        def _build():
            q = (
                self.supabase.table(OPPORTUNITY_QUOTE_VIEW)
                .select("*")
                .not_.is_("opportunity_created_date", "null")
                .not_.is_("quote_created_date", "null")
                .not_.is_("amount_usd_final", "null")
            )
            q = apply_filters(self._scoped(q), filters)
            q = apply_deal_size_filter(q, filters, "amount_usd_final")
            return apply_speed_filter(q, filters)

        return await self._fetch_all_pages(OPPORTUNITY_QUOTE_VIEW, _build)

    async def fetch_quote_to_order_data(self, filters: FlowFilters) -> list[dict]:
        def _build():
            q = (
                self.supabase.table(QUOTE_ORDER_VIEW)
                .select("*")
                .not_.is_("opportunity_created_date", "null")
                .not_.is_("quote_created_date", "null")
                .not_.is_("order_created_date", "null")
                .not_.is_("opportunity_amount_usd_final", "null")
            )
            q = apply_filters(self._scoped(q), filters)
            return apply_deal_size_filter(q, filters, "opportunity_amount_usd_final")

        return await self._fetch_all_pages(QUOTE_ORDER_VIEW, _build)

    # ------------------------------------------------------------------
    # View refresh
    # ------------------------------------------------------------------

    async def refresh_materialized_views(self) -> dict[str, bool]:
        """Refresh all flow views; failures are logged per view, never raised."""
        async def _refresh(view: str):
            return await run_db(
                lambda: self.supabase.rpc("refresh_materialized_view", {"view_name": view}).execute()
            )

        results = await asyncio.gather(*[_refresh(v) for v in MATERIALIZED_VIEWS], return_exceptions=True)
        status = {}
        for view, result in zip(MATERIALIZED_VIEWS, results):
            ok = not isinstance(result, Exception)
            if not ok:
                logger.warning(f"Refresh of {view} failed (continuing with existing data): {result}")
            status[view] = ok
        return status

    async def maybe_refresh_views(self) -> bool:
        """Refresh with probability `refresh_probability`. Concurrent refreshes are tolerated."""
        if self._random() >= self.refresh_probability:
            return False
        logger.info("Triggering materialized view refresh")
        await self.refresh_materialized_views()
        return True

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    async def get_flow_data_for_period(self, filters: FlowFilters) -> FlowData:
        await self.maybe_refresh_views()
        # Sequential on purpose: two concurrent 10k-row scans trip statement timeouts
        opp_quote = await self.fetch_opportunity_to_quote_data(filters)
        quote_order = await self.fetch_quote_to_order_data(filters)
        return process_flow_data(opp_quote, quote_order)

    def comparison_periods(self, filters: FlowFilters) -> tuple[PeriodComparison, Period]:
        """Windows are always anchored at today; an explicit range only sets P."""
        length = period_length_days(filters)
        return (
            get_period_comparison(None, length, today=self.today()),
            get_extended_date_range(length, today=self.today()),
        )

    @staticmethod
    def _slice(all_data: FlowData, period: Period) -> FlowData:
        return process_flow_data(
            filter_data_by_date_range(all_data.opportunity_to_quote_data, period.start, period.end),
            filter_data_by_date_range(all_data.quote_to_order_data, period.start, period.end),
        )

    async def get_period_comparison(self, filters: FlowFilters) -> dict:
        """Single extended fetch, sliced client-side into current / last month / last quarter."""
        periods, extended = self.comparison_periods(filters)
        all_data = await self.get_flow_data_for_period(
            filters.with_date_range(extended.start, extended.end)
        )

        current = self._slice(all_data, periods.current)
        last_month = self._slice(all_data, periods.last_month)
        last_quarter = self._slice(all_data, periods.last_quarter)
        stages_with_trends = calculate_trend_comparisons(current, last_month, last_quarter)

        current_dict = current.to_dict()
        current_dict["stages"] = stages_with_trends
        return {
            "current": current_dict,
            "lastMonth": last_month.to_dict(),
            "lastQuarter": last_quarter.to_dict(),
            "periods": periods.to_dict(),
            "trendComparisons": stages_with_trends,
        }

    # ------------------------------------------------------------------
    # Invoice → payment
    # ------------------------------------------------------------------

    async def get_invoice_to_payment_data(self, filters: FlowFilters) -> dict:
        periods, extended = self.comparison_periods(filters)

        def _build():
            q = (
                self.supabase.table(INVOICE_PAYMENT_VIEW)
                .select("*")
                .not_.is_("days_invoice_to_payment", "null")
                .gte("invoice_created_date", extended.start)
                .lte("invoice_created_date", extended.end)
            )
            return self._scoped(q)

        rows = await self._fetch_all_pages(INVOICE_PAYMENT_VIEW, _build, order_column="invoice_created_date")

        def _window(period: Period):
            subset = filter_data_by_date_range(rows, period.start, period.end, field="invoice_created_date")
            return subset, compute_stage_stats(subset, INVOICE_TO_PAYMENT)

        def _summary(stats) -> dict:
            if stats is None:
                return {"avgDays": 0, "count": 0, "rawAvgDays": 0, "medianDays": 0, "performance": 0}
            return {
                "avgDays": stats.avg_days,
                "count": stats.record_count,
                "rawAvgDays": stats.raw_avg_days,
                "medianDays": stats.median_days,
                "performance": stats.performance,
            }

        current_rows, current = _window(periods.current)
        _, last_month = _window(periods.last_month)
        _, last_quarter = _window(periods.last_quarter)

        return {
            "current": _summary(current),
            "vsLastMonth": _summary(last_month),
            "vsPreviousQuarter": _summary(last_quarter),
            "trend": {
                "vsLastMonth": compare_stage(current, last_month) if current else None,
                "vsLastQuarter": compare_stage(current, last_quarter) if current else None,
            },
            "periods": periods.to_dict(),
            "detailedData": [invoice_to_payment_detail(r) for r in current_rows],
        }

    # ------------------------------------------------------------------
    # Credit memo ratio
    # ------------------------------------------------------------------

    async def _count_in_range(self, table: str, date_column: str, period: Period) -> int:
        def _q():
            q = (
                self.supabase.table(table)
                .select("id", count="exact")
                .gte(date_column, period.start)
                .lte(date_column, period.end)
            )
            return self._scoped(q).limit(0).execute()

        result = await run_db(_q)
        return result.count or 0

    async def _ratio_for(self, period: Period) -> dict:
        invoices, memos = await asyncio.gather(
            self._count_in_range(INVOICES_TABLE, "tran_date", period),
            self._count_in_range(CREDIT_MEMOS_TABLE, "trandate", period),
        )
        raw = (memos / invoices) * 100 if invoices > 0 else 0
        return {
            "ratio": round(raw, 2),
            "invoices": invoices,
            "creditMemos": memos,
            "rawRatio": raw,
        }

    async def _detail_rows(self, table: str, date_column: str, period: Period) -> list[dict]:
        def _q():
            q = (
                self.supabase.table(table)
                .select(f"id, tran_id, {date_column}, entity_name, total, status")
                .gte(date_column, period.start)
                .lte(date_column, period.end)
            )
            return self._scoped(q).order(date_column, desc=True).limit(DETAIL_ROW_LIMIT).execute()

        result = await run_db(_q)
        return result.data or []

    async def get_credit_memo_ratio_data(self, filters: FlowFilters) -> dict:
        """Credit memos per 100 invoices for the current / last month / last quarter windows."""
        periods, _ = self.comparison_periods(filters)
        try:
            current, last_month, last_quarter = await asyncio.gather(
                self._ratio_for(periods.current),
                self._ratio_for(periods.last_month),
                self._ratio_for(periods.last_quarter),
            )
            invoices, memos = await asyncio.gather(
                self._detail_rows(INVOICES_TABLE, "tran_date", periods.current),
                self._detail_rows(CREDIT_MEMOS_TABLE, "trandate", periods.current),
            )
        except Exception as e:
            logger.error(f"Credit memo ratio query failed: {e}")
            raise FlowDataError(f"Failed to compute credit memo ratio: {e}") from e

        label = f"{periods.current.start} to {periods.current.end}"
        detailed = [
            {
                "id": r.get("id"),
                "type": "Invoice",
                "number": r.get("tran_id"),
                "date": r.get("tran_date"),
                "entity": r.get("entity_name"),
                "amount": _to_float(r.get("total")),
                "status": r.get("status") or "Posted",
                "period": label,
            }
            for r in invoices
        ] + [
            {
                "id": r.get("id"),
                "type": "Credit Memo",
                "number": r.get("tran_id"),
                "date": r.get("trandate"),
                "entity": r.get("entity_name"),
                "amount": _to_float(r.get("total")),
                "status": r.get("status") or "Posted",
                "period": label,
            }
            for r in memos
        ]
        detailed.sort(key=lambda d: d["date"] or "", reverse=True)

        return {
            "current": current,
            "vsLastMonth": last_month,
            "vsPreviousQuarter": last_quarter,
            "periods": periods.to_dict(),
            "detailedData": detailed,
        }

    # ------------------------------------------------------------------
    # Opportunity summary
    # ------------------------------------------------------------------

    async def get_opportunity_summary(self, filters: FlowFilters) -> dict:
        columns = (
            "opportunity_amount, stage_name, opportunity_created_date, customer_tier, "
            "market_segment, customer_country, lead_source, opportunity_type"
        )

        def _build():
            q = (
                self.supabase.table(OPPORTUNITY_QUOTE_VIEW)
                .select(columns)
                .not_.is_("opportunity_created_date", "null")
            )
            q = apply_filters(self._scoped(q), filters)
            return apply_deal_size_filter(q, filters, "opportunity_amount")

        rows = await self._fetch_all_pages(OPPORTUNITY_QUOTE_VIEW, _build)
        return summarize_opportunities(rows)


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def summarize_opportunities(rows: list[dict]) -> dict:
    if not rows:
        return {
            "totalRecords": 0,
            "sampleRecords": [],
            "allStages": [],
            "dateRange": {"earliest": None, "latest": None},
            "summary": {"totalAmount": 0, "averageAmount": 0, "closedWon": 0, "closedLost": 0},
        }

    amounts = [a for a in (r.get("opportunity_amount") or 0 for r in rows) if a > 0]
    total_amount = sum(amounts)
    stages = [r.get("stage_name") for r in rows if r.get("stage_name")]
    created = sorted(r["opportunity_created_date"] for r in rows if r.get("opportunity_created_date"))

    return {
        "totalRecords": len(rows),
        "sampleRecords": [
            {
                "amount": r.get("opportunity_amount"),
                "stage_name": r.get("stage_name"),
                "created_date": r.get("opportunity_created_date"),
                "customer_tier": r.get("customer_tier"),
                "market_segment": r.get("market_segment"),
                "customer_country": r.get("customer_country"),
                "lead_source": r.get("lead_source"),
                "type": r.get("opportunity_type"),
            }
            for r in rows[:100]
        ],
        "allStages": list(dict.fromkeys(stages)),
        "dateRange": {
            "earliest": created[0] if created else None,
            "latest": created[-1] if created else None,
        },
        "summary": {
            "totalAmount": total_amount,
            "averageAmount": total_amount / len(amounts) if amounts else 0,
            "closedWon": sum(1 for s in stages if "closed won" in s.lower()),
            "closedLost": sum(1 for s in stages if "closed lost" in s.lower()),
        },
    }
