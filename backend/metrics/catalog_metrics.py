"""
Catalog metrics: price books, products and the combined cost summary.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from db import run_db
from metrics.status_thresholds import (
    ACTIVE_PRICE_BOOKS,
    PRODUCT_CATALOGUE,
    get_metric_status,
    threshold_fields,
)

logger = logging.getLogger(__name__)

PRICEBOOK_TABLE = "pricebook_raw"
PRODUCTS_TABLE = "products_raw"
PRODUCT_PAGE_SIZE = 1000


def _active_label(is_active) -> str:
    return "Active" if is_active else "Inactive"


def pricebook_row(r: dict) -> dict:
    return {
        "id": r.get("id"),
        "name": r.get("name"),
        "is_active": bool(r.get("is_active")),
        "created_date": r.get("created_date"),
        "last_modified_date": r.get("last_modified_date"),
        "status": _active_label(r.get("is_active")),
    }


def product_row(r: dict) -> dict:
    return {
        "id": r.get("id"),
        "name": r.get("name"),
        "product_code": r.get("product_code"),
        "is_active": bool(r.get("is_active")),
        "status": _active_label(r.get("is_active")),
        "created_date": r.get("created_date"),
        "last_modified_date": r.get("last_modified_date"),
    }


async def get_pricebook_metrics(supabase, page: int = 1, page_size: int = 50, sort_by: str = "name",
                                sort_direction: str = "asc") -> dict:
    offset = (page - 1) * page_size

    def _q():
        return (
            supabase.table(PRICEBOOK_TABLE)
            .select("*", count="exact")
            .order(sort_by, desc=sort_direction == "desc")
            .range(offset, offset + page_size - 1)
            .execute()
        )

    result = await run_db(_q)
    rows = [pricebook_row(r) for r in (result.data or [])]
    total = result.count if result.count is not None else len(rows)
    active = await count_rows(supabase, PRICEBOOK_TABLE, active_only=True)

    return {
        "data": rows,
        "totalRecords": total,
        "page": page,
        "pageSize": page_size,
        "summary": {
            "total_records": total,
            "active_pricebooks": active,
            "inactive_pricebooks": max(total - active, 0),
            "latest_calculation_date": datetime.now(timezone.utc).date().isoformat(),
        },
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "totalPages": -(-total // page_size) if page_size else 0,
        },
        "status": get_metric_status(ACTIVE_PRICE_BOOKS, active, has_data=total > 0),
        **threshold_fields(ACTIVE_PRICE_BOOKS),
    }


async def get_product_metrics(supabase, sort_by: str = "name", sort_direction: str = "asc") -> dict:
    """All of products_raw, read in PRODUCT_PAGE_SIZE pages."""
    rows: list[dict] = []
    offset = 0
    while True:
        result = await run_db(
            lambda o=offset: supabase.table(PRODUCTS_TABLE)
            .select("*")
            .order(sort_by, desc=sort_direction == "desc")
            .range(o, o + PRODUCT_PAGE_SIZE - 1)
            .execute()
        )
        batch = result.data or []
        rows.extend(batch)
        if len(batch) < PRODUCT_PAGE_SIZE:
            break
        offset += PRODUCT_PAGE_SIZE

    data = [product_row(r) for r in rows]
    active = sum(1 for r in data if r["is_active"])
    logger.info(f"Product metrics: {len(data)} products, {active} active")

    return {
        "data": data,
        "totalRecords": len(data),
        "summary": {
            "total_products": len(data),
            "active_products": active,
            "inactive_products": len(data) - active,
        },
        "status": get_metric_status(PRODUCT_CATALOGUE, len(data), has_data=bool(data)),
        **threshold_fields(PRODUCT_CATALOGUE),
    }


async def count_rows(supabase, table: str, active_only: bool = False) -> int:
    def _q():
        q = supabase.table(table).select("id", count="exact")
        if active_only:
            q = q.eq("is_active", True)
        return q.limit(0).execute()

    result = await run_db(_q)
    return result.count or 0


async def get_cost_metrics(supabase) -> dict:
    total_products, active_products, total_books, active_books = await asyncio.gather(
        count_rows(supabase, PRODUCTS_TABLE),
        count_rows(supabase, PRODUCTS_TABLE, active_only=True),
        count_rows(supabase, PRICEBOOK_TABLE),
        count_rows(supabase, PRICEBOOK_TABLE, active_only=True),
    )
    return {
        "success": True,
        "summary": {
            "total_products": total_products,
            "active_products": active_products,
            "total_pricebooks": total_books,
            "active_pricebooks": active_books,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        },
    }
