"""
Paged reads of the synced entities.

Each entity is read from its USD-enriched materialized view:

  GET /api/salesforce/opportunities   mv_opportunities_with_usd
  GET /api/salesforce/quotes          mv_quotes_with_usd
  GET /api/salesforce/orders          mv_orders_with_usd
  GET /api/netsuite/credit-memos      mv_credit_memos_with_usd

One query per page: tenant filter, created-date range, `in` filters on the
entity's dimensions, a case-insensitive substring search over a few text
columns, then `order` + `range()` with an exact count. The envelope is
{data, totalRecords, page, pageSize, totalPages, hasNextPage, hasPreviousPage}.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from db import run_db

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityView:
    view: str
    date_column: str
    search_columns: tuple[str, ...]
    error_code: str
    # request filter name → view column
    filter_columns: dict = field(default_factory=dict)


ENTITY_VIEWS: dict[str, EntityView] = {
    "opportunities": EntityView(
        view="mv_opportunities_with_usd",
        date_column="opportunity_created_date",
        search_columns=("opportunity_name", "opportunity_stage_name", "customer_tier", "customer_country"),
        error_code="SALESFORCE_OPPORTUNITIES_ERROR",
        filter_columns={
            "customerTier": "customer_tier",
            "region": "customer_country",
            "stage": "opportunity_stage_name",
            "leadType": "opportunity_lead_source",
            "productType": "opportunity_type",
            "customerType": "customer_market_segment",
        },
    ),
    "quotes": EntityView(
        view="mv_quotes_with_usd",
        date_column="quote_created_date",
        search_columns=("quote_name", "quote_status", "quote_type", "billing_country"),
        error_code="SALESFORCE_QUOTES_ERROR",
    ),
    "orders": EntityView(
        view="mv_orders_with_usd",
        date_column="order_created_date",
        search_columns=("order_name", "order_status", "order_type", "shipping_country_code"),
        error_code="SALESFORCE_ORDERS_ERROR",
    ),
    "credit-memos": EntityView(
        view="mv_credit_memos_with_usd",
        date_column="credit_memo_created_date",
        search_columns=("credit_memo_customer_name", "credit_memo_transaction_id", "credit_memo_status"),
        error_code="NETSUITE_CREDIT_MEMOS_ERROR",
    ),
}


@dataclass
class ListingQuery:
    page: int = 1
    page_size: int = 50
    sort_by: Optional[str] = None              # defaults to the view's date column
    sort_direction: str = "desc"
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    search_text: Optional[str] = None
    filters: dict[str, list[str]] = field(default_factory=dict)


def search_filter(columns: tuple[str, ...], text: Optional[str]) -> Optional[str]:
    """PostgREST or-expression matching `text` anywhere in any of `columns`.

    Values are double-quoted so commas and parentheses in the search text
    stay literal; quotes and backslashes are dropped.
    """
    term = (text or "").replace('"', "").replace("\\", "").strip()
    if not term:
        return None
    return ",".join(f'{column}.ilike."%{term}%"' for column in columns)


def split_csv(value: Optional[str]) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


async def list_entities(supabase, entity: str, query: ListingQuery, tenant_id: Optional[str] = None) -> dict:
    entity_view = ENTITY_VIEWS[entity]
    offset = (query.page - 1) * query.page_size
    search = search_filter(entity_view.search_columns, query.search_text)

    def _q():
        q = supabase.table(entity_view.view).select("*", count="exact")
        if tenant_id:
            q = q.eq("tenant_id", tenant_id)
        if query.date_from:
            q = q.gte(entity_view.date_column, query.date_from)
        if query.date_to:
            q = q.lte(entity_view.date_column, query.date_to)
        for name, column in entity_view.filter_columns.items():
            values = query.filters.get(name)
            if values:
                q = q.in_(column, values)
        if search:
            q = q.or_(search)
        return (
            q.order(query.sort_by or entity_view.date_column, desc=query.sort_direction == "desc")
            .range(offset, offset + query.page_size - 1)
            .execute()
        )

    result = await run_db(_q)
    rows = result.data or []
    total = result.count or 0
    total_pages = -(-total // query.page_size)
    logger.info(f"{entity_view.view}: page {query.page} → {len(rows)} of {total} rows")

    return {
        "data": rows,
        "totalRecords": total,
        "page": query.page,
        "pageSize": query.page_size,
        "totalPages": total_pages,
        "hasNextPage": query.page < total_pages,
        "hasPreviousPage": query.page > 1,
    }
