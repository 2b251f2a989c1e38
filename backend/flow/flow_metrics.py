"""
Flow Metrics Processor
======================
Turns joined view rows into per-stage aggregates and drill-down rows.

Stages
------
  Opportunity to Quote   days_to_quote            target 3 days
  Quote to Order         days_quote_to_order      target 5 days
  Invoice to Payment     days_invoice_to_payment  target 20 days (band 15–25)

Median
------
  upper_median() returns sorted[len // 2]. For even-length input this is the
  upper-middle element ([1, 2, 3, 4] → 3), never the mean of the two middles.

Performance
-----------
  round(max(0, target / max(median, target)) * 100)
  → 100 when the median is at or under target, decays as it grows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from flow.percentage_change import calculate_percentage_change, PercentageChange

logger = logging.getLogger(__name__)

OPPORTUNITY_TO_QUOTE = "Opportunity to Quote"
QUOTE_TO_ORDER = "Quote to Order"
INVOICE_TO_PAYMENT = "Invoice to Payment"

STAGE_TARGET_DAYS: dict[str, float] = {
    OPPORTUNITY_TO_QUOTE: 3,
    QUOTE_TO_ORDER: 5,
    INVOICE_TO_PAYMENT: 20,
}

STAGE_DURATION_FIELDS: dict[str, str] = {
    OPPORTUNITY_TO_QUOTE: "days_to_quote",
    QUOTE_TO_ORDER: "days_quote_to_order",
    INVOICE_TO_PAYMENT: "days_invoice_to_payment",
}

DETAIL_KEYS: dict[str, str] = {
    OPPORTUNITY_TO_QUOTE: "opportunity-to-quote",
    QUOTE_TO_ORDER: "quote-to-order",
    INVOICE_TO_PAYMENT: "invoice-to-payment",
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class StageStats:
    stage: str
    avg_days: float          # display value, 1 decimal
    raw_avg_days: float      # unrounded, used for trend math
    median_days: float
    performance: int         # 0–100
    record_count: int

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "avgDays": self.avg_days,
            "rawAvgDays": self.raw_avg_days,
            "medianDays": self.median_days,
            "performance": self.performance,
            "recordCount": self.record_count,
        }


@dataclass
class FlowData:
    opportunity_to_quote_data: list[dict] = field(default_factory=list)
    quote_to_order_data: list[dict] = field(default_factory=list)
    stages: list[StageStats] = field(default_factory=list)
    detailed_data: dict[str, list[dict]] = field(default_factory=dict)

    def stage(self, name: str) -> Optional[StageStats]:
        for s in self.stages:
            if s.stage == name:
                return s
        return None

    def to_dict(self, include_rows: bool = False) -> dict:
        out = {
            "stages": [s.to_dict() for s in self.stages],
            "detailedData": self.detailed_data,
        }
        if include_rows:
            out["opportunityToQuoteData"] = self.opportunity_to_quote_data
            out["quoteToOrderData"] = self.quote_to_order_data
        return out


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _round1(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def upper_median(values: list[float]) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


def performance_score(median: float, target: float) -> int:
    return math.floor(max(0, target / max(median, target)) * 100 + 0.5)


def _durations(rows: list[dict], duration_field: str) -> list[float]:
    return [r[duration_field] for r in rows if r.get(duration_field) is not None]


def compute_stage_stats(rows: list[dict], stage: str) -> Optional[StageStats]:
    """Aggregate one stage; None when no row carries a duration."""
    durations = _durations(rows or [], STAGE_DURATION_FIELDS[stage])
    if not durations:
        return None

    avg = sum(durations) / len(durations)
    median = upper_median(durations)
    return StageStats(
        stage=stage,
        avg_days=_round1(avg),
        raw_avg_days=avg,
        median_days=_round1(median),
        performance=performance_score(median, STAGE_TARGET_DAYS[stage]),
        record_count=len(durations),
    )


def _duration_label(days: Optional[float]) -> str:
    return f"{days:.1f} days" if days is not None else "N/A"


def opportunity_to_quote_detail(r: dict) -> dict:
    return {
        "id": r.get("opportunity_id"),
        "opportunity": r.get("opportunity_name"),
        "startDate": r.get("opportunity_created_date"),
        "endDate": r.get("quote_created_date"),
        "duration": _duration_label(r.get("days_to_quote")),
        "status": "Completed",
        "opportunityAmountUSD": r.get("amount_usd_final") or r.get("amount") or 0,
        "region": r.get("customer_country") or "N/A",
        "type": r.get("opportunity_type"),
    }


def quote_to_order_detail(r: dict) -> dict:
    return {
        "id": r.get("quote_id"),
        "opportunity": r.get("opportunity_name"),
        "startDate": r.get("quote_created_date"),
        "endDate": r.get("order_created_date"),
        "duration": _duration_label(r.get("days_quote_to_order")),
        "status": r.get("order_status") or "Completed",
        "opportunityAmountUSD": r.get("opportunity_amount_usd_final") or r.get("opportunity_amount") or 0,
        "orderTotalAmountUSD": r.get("order_total_amount_usd_final") or r.get("order_total_amount") or 0,
        "region": r.get("customer_country") or "N/A",
        "type": r.get("opportunity_type"),
    }


def invoice_to_payment_detail(r: dict) -> dict:
    return {
        "id": r.get("invoice_id"),
        "invoice": r.get("invoice_number") or r.get("tran_id"),
        "startDate": r.get("invoice_created_date"),
        "endDate": r.get("payment_date"),
        "duration": _duration_label(r.get("days_invoice_to_payment")),
        "status": r.get("payment_status") or "Paid",
        "invoiceAmountUSD": r.get("invoice_amount_usd") or r.get("invoice_total") or 0,
        "customer": r.get("entity_name") or "N/A",
    }


_DETAIL_BUILDERS = {
    OPPORTUNITY_TO_QUOTE: opportunity_to_quote_detail,
    QUOTE_TO_ORDER: quote_to_order_detail,
    INVOICE_TO_PAYMENT: invoice_to_payment_detail,
}


def build_stage(rows: list[dict], stage: str, flow: FlowData) -> None:
    stats = compute_stage_stats(rows, stage)
    if stats is None:
        return
    flow.stages.append(stats)
    duration_field = STAGE_DURATION_FIELDS[stage]
    builder = _DETAIL_BUILDERS[stage]
    flow.detailed_data[DETAIL_KEYS[stage]] = [
        builder(r) for r in rows if r.get(duration_field) is not None
    ]


def process_flow_data(opportunity_to_quote_rows: list[dict], quote_to_order_rows: list[dict]) -> FlowData:
    """Stage stats + detail rows for the opportunity→quote and quote→order views."""
    flow = FlowData(
        opportunity_to_quote_data=opportunity_to_quote_rows or [],
        quote_to_order_data=quote_to_order_rows or [],
    )
    build_stage(flow.opportunity_to_quote_data, OPPORTUNITY_TO_QUOTE, flow)
    build_stage(flow.quote_to_order_data, QUOTE_TO_ORDER, flow)
    return flow


# ---------------------------------------------------------------------------
# Trend comparison
# ---------------------------------------------------------------------------

_NO_DATA_METADATA = PercentageChange(
    change_percent=0,
    has_current_data=False,
    has_previous_data=False,
    is_no_data=True,
    is_zero_to_zero=False,
)


def _no_data_block() -> dict:
    return {
        "avgDaysChange": 0,
        "performanceChange": 0,
        "recordCountChange": 0,
        "hasData": False,
        "avgDaysMetadata": _NO_DATA_METADATA.to_dict(),
        "performanceMetadata": _NO_DATA_METADATA.to_dict(),
        "recordCountMetadata": _NO_DATA_METADATA.to_dict(),
    }


def compare_stage(current: StageStats, previous: Optional[StageStats]) -> dict:
    if previous is None:
        return _no_data_block()

    avg = calculate_percentage_change(current.raw_avg_days, previous.raw_avg_days)
    perf = calculate_percentage_change(current.performance, previous.performance)
    count = calculate_percentage_change(current.record_count, previous.record_count)
    return {
        "avgDaysChange": avg.change_percent,
        "performanceChange": perf.change_percent,
        "recordCountChange": count.change_percent,
        "hasData": True,
        "previousAvgDays": previous.avg_days,
        "previousPerformance": previous.performance,
        "previousRecordCount": previous.record_count,
        "avgDaysMetadata": avg.to_dict(),
        "performanceMetadata": perf.to_dict(),
        "recordCountMetadata": count.to_dict(),
    }


def calculate_trend_comparisons(current: FlowData, last_month: FlowData, last_quarter: FlowData) -> list[dict]:
    """Current stages annotated with vsLastMonth / vsLastQuarter blocks."""
    out = []
    for stage in current.stages:
        d = stage.to_dict()
        d["vsLastMonth"] = compare_stage(stage, last_month.stage(stage.stage))
        d["vsLastQuarter"] = compare_stage(stage, last_quarter.stage(stage.stage))
        out.append(d)
    return out
