"""
Flow filters → Supabase query filters.

Every filter value of "all" (or None/empty) is ignored. Deal size is
applied as a half-open range on a USD-normalized amount column that
differs per view, so the caller passes `amount_column`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

ALL = "all"

# FlowFilters attribute → view column (eq filter)
FILTER_COLUMNS: dict[str, str] = {
    "customer_tier": "customer_tier",
    "geolocation": "customer_country",
    "product_type": "market_segment",
    "stage": "stage_name",
    "lead_type": "lead_source",
    "customer_type": "opportunity_type",
}

# mv_lead_to_cash_flow prefixes its dimension columns
LEAD_TO_CASH_COLUMNS: dict[str, str] = {
    "customer_tier": "customer_tier",
    "geolocation": "customer_country",
    "product_type": "customer_market_segment",
    "stage": "opportunity_stage_name",
    "lead_type": "opportunity_lead_source",
    "customer_type": "opportunity_type",
}

DATE_COLUMN = "opportunity_created_date"

# bucket → (min inclusive, max exclusive); None = unbounded
DEAL_SIZE_RANGES: dict[str, tuple[Optional[float], Optional[float]]] = {
    "small": (None, 10_000),
    "medium": (10_000, 100_000),
    "large": (100_000, 1_000_000),
    "enterprise": (1_000_000, None),
}

# Opportunity → quote speed buckets on days_to_quote.
# fast is closed on both ends; slow starts at the same 0.5 boundary.
SPEED_RANGES: dict[str, tuple[float, Optional[float]]] = {
    "fast": (0, 0.5),
    "slow": (0.5, None),
}


@dataclass
class FlowFilters:
    date_range: Optional[dict] = None          # {"from": "YYYY-MM-DD", "to": "YYYY-MM-DD"}
    days_back: Optional[int] = None
    customer_tier: Optional[str] = None
    geolocation: Optional[str] = None
    product_type: Optional[str] = None
    stage: Optional[str] = None
    lead_type: Optional[str] = None
    customer_type: Optional[str] = None
    deal_size: Optional[str] = None
    opportunity_to_quote_speed: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_request(cls, payload: Optional[dict]) -> "FlowFilters":
        """Build from a camelCase request body (the dashboard's filter shape)."""
        payload = payload or {}
        return cls(
            date_range=payload.get("dateRange"),
            days_back=payload.get("daysBack"),
            customer_tier=payload.get("customerTier"),
            geolocation=payload.get("geolocation"),
            product_type=payload.get("productType"),
            stage=payload.get("stage"),
            lead_type=payload.get("leadType"),
            customer_type=payload.get("customerType"),
            deal_size=payload.get("dealSize"),
            opportunity_to_quote_speed=payload.get("opportunityToQuoteTime"),
        )

    def with_date_range(self, start: str, end: str) -> "FlowFilters":
        return replace(self, date_range={"from": start, "to": end})

    def cache_params(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v not in (None, {}, ALL, "")}


def is_active(value: Any) -> bool:
    return value not in (None, "", ALL)


def deal_size_bucket(amount: float) -> Optional[str]:
    """Which bucket a (non-negative) amount belongs to."""
    for bucket, (low, high) in DEAL_SIZE_RANGES.items():
        if (low is None or amount >= low) and (high is None or amount < high):
            return bucket
    return None


def apply_filters(query, filters: FlowFilters, date_column: str = DATE_COLUMN, columns: Optional[dict] = None):
    """Apply date range and dimension filters to a Supabase query builder."""
    dr = filters.date_range or {}
    if dr.get("from"):
        query = query.gte(date_column, dr["from"])
    if dr.get("to"):
        query = query.lte(date_column, dr["to"])

    for attr, column in (columns or FILTER_COLUMNS).items():
        value = getattr(filters, attr)
        if is_active(value):
            query = query.eq(column, value)
    return query


def apply_deal_size_filter(query, filters: FlowFilters, amount_column: str):
    if not is_active(filters.deal_size):
        return query
    bounds = DEAL_SIZE_RANGES.get(filters.deal_size)
    if bounds is None:
        return query
    low, high = bounds
    if low is not None:
        query = query.gte(amount_column, low)
    if high is not None:
        query = query.lt(amount_column, high)
    return query


def apply_speed_filter(query, filters: FlowFilters, days_column: str = "days_to_quote"):
    if not is_active(filters.opportunity_to_quote_speed):
        return query
    bounds = SPEED_RANGES.get(filters.opportunity_to_quote_speed)
    if bounds is None:
        return query
    low, high = bounds
    query = query.gte(days_column, low)
    if high is not None:
        query = query.lte(days_column, high)
    return query
