"""
Ingestion Job Base
==================
Shared pipeline for pulling records from Salesforce / NetSuite into the
raw tables that feed the flow views.

    fetch  →  dedupe by source id  →  prepare  →  transform  →  resolve references  →  batch upsert

Batch upsert
------------
  - 502 / Bad Gateway: retried through RetryPolicy (3 tries, 1s × attempt)
  - 21000 "cannot affect row a second time": the batch is replayed one
    record at a time
  - anything else: the whole batch is counted as errors

Success / error counts accumulate across batches; a failed batch never
aborts the run.

IMPORTANT: supabase-py is synchronous, every call goes through db.run_db().
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from db import run_db
from retry_policy import RetryPolicy, is_bad_gateway, is_row_affected_twice, linear_backoff

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BACK = 365
UPSERT_ATTEMPTS = 3


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_from: Optional[str] = Field(default=None, alias="dateFrom")
    date_to: Optional[str] = Field(default=None, alias="dateTo")
    limit: Optional[int] = Field(default=None, ge=1)
    days_back: int = Field(default=DEFAULT_DAYS_BACK, ge=1, le=2000, alias="daysBack")
    stream: bool = False


def resolve_date_range(request: DownloadRequest, today: Optional[date] = None) -> tuple[str, str]:
    """Explicit dateFrom + dateTo win; otherwise the last daysBack days ending today."""
    if request.date_from and request.date_to:
        return request.date_from[:10], request.date_to[:10]
    today = today or date.today()
    return (today - timedelta(days=request.days_back)).isoformat(), today.isoformat()


def dedupe_by_source_id(records: list[dict], key: str) -> list[dict]:
    """Keep the first record per source id; every dropped duplicate is logged."""
    seen = set()
    unique = []
    for record in records:
        source_id = record.get(key)
        if source_id in seen:
            logger.warning(f"Dropping duplicate record {key}={source_id}")
            continue
        seen.add(source_id)
        unique.append(record)
    return unique


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def ref_name(value: Any) -> Optional[str]:
    """NetSuite reference objects are {"id": ..., "refName": ...}."""
    if isinstance(value, dict):
        return value.get("refName")
    return None


def ref_id(value: Any) -> Optional[str]:
    if isinstance(value, dict) and value.get("id") is not None:
        return str(value["id"])
    return None


# ---------------------------------------------------------------------------
# Progress + result
# ---------------------------------------------------------------------------

@dataclass
class IngestionResult:
    success: bool
    count: int
    success_count: int
    error_count: int
    date_range: dict
    message: str

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "count": self.count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "progress": {
                "total": self.count,
                "processed": self.count,
                "percentage": 100,
                "completed": True,
            },
            "dateRange": self.date_range,
            "message": self.message,
        }


@dataclass
class ProgressEvent:
    total: int
    processed: int
    success_count: int = 0
    error_count: int = 0
    result: Optional[IngestionResult] = field(default=None, repr=False)

    @property
    def percentage(self) -> int:
        if not self.total:
            return 100
        return math.floor(self.processed / self.total * 100 + 0.5)

    @property
    def completed(self) -> bool:
        return self.processed >= self.total

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "percentage": self.percentage,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "completed": self.completed,
        }


def format_sse(event_type: str, data: dict) -> str:
    return f"data: {json.dumps({'type': event_type, 'data': data}, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

class IngestionJob(ABC):
    """One source object → one raw table."""

    name: str = "records"          # plural noun used in messages
    table: str = ""
    on_conflict: str = ""
    batch_size: int = 25
    batch_delay: float = 0.5       # seconds between upsert batches
    source_id_key: str = "Id"      # id field on the raw source record
    error_code: str = "INGESTION_ERROR"

    def __init__(self, supabase, tenant_id: str, retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.supabase = supabase
        self.tenant_id = tenant_id
        self._sleep = sleep
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=UPSERT_ATTEMPTS,
            backoff=linear_backoff(1.0),
            retryable=is_bad_gateway,
            sleep=sleep,
            label=f"upsert into {self.table}",
        )

    @abstractmethod
    async def fetch_records(self, start: str, end: str, limit: Optional[int] = None) -> list[dict]:
        """Raw records from the source system created in [start, end]."""

    @abstractmethod
    def transform(self, record: dict) -> dict:
        """Raw source record → row for self.table."""

    def prepare(self, records: list[dict]) -> list[dict]:
        """Job-specific selection over deduplicated raw records."""
        return records

    async def resolve_references(self, rows: list[dict]) -> list[dict]:
        """Fill foreign keys that need a store lookup."""
        return rows

    async def lookup_ids(self, table: str, source_ids: list[str]) -> dict[str, Any]:
        """salesforce_id → local id for this tenant's rows in `table`."""
        ids = sorted({s for s in source_ids if s})
        if not ids:
            return {}
        result = await run_db(
            lambda: self.supabase.table(table)
            .select("id, salesforce_id")
            .eq("tenant_id", self.tenant_id)
            .in_("salesforce_id", ids)
            .execute()
        )
        return {r["salesforce_id"]: r["id"] for r in (result.data or [])}

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert_one(self, row: dict) -> None:
        await run_db(lambda: self.supabase.table(self.table).upsert(row, on_conflict=self.on_conflict).execute())

    async def _upsert_individually(self, rows: list[dict]) -> tuple[int, int]:
        ok = failed = 0
        for row in rows:
            try:
                await self.upsert_one(row)
                ok += 1
            except Exception as e:
                failed += 1
                logger.warning(f"Single upsert failed for {self.table} ({self.on_conflict}={row.get(self.on_conflict)}): {e}")
        return ok, failed

    async def upsert_batch(self, rows: list[dict]) -> tuple[int, int]:
        """Returns (success_count, error_count) for the batch."""
        if not rows:
            return 0, 0

        async def _upsert():
            return await run_db(
                lambda: self.supabase.table(self.table).upsert(rows, on_conflict=self.on_conflict).execute()
            )

        try:
            await self.retry_policy.run(_upsert)
            return len(rows), 0
        except Exception as e:
            if is_row_affected_twice(e):
                logger.warning(f"Batch into {self.table} touched a row twice, retrying record by record")
                return await self._upsert_individually(rows)
            logger.error(f"Batch upsert failed for {self.table}: {e}")
            return 0, len(rows)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _message(self, count: int, success_count: int, error_count: int) -> str:
        if error_count:
            return (
                f"Downloaded {count} {self.name}. {success_count} saved successfully, "
                f"{error_count} had errors."
            )
        return f"Successfully downloaded and saved {count} {self.name}."

    async def events(self, request: DownloadRequest, today: Optional[date] = None) -> AsyncIterator[ProgressEvent]:
        """Progress after each batch; the final event carries the IngestionResult."""
        start, end = resolve_date_range(request, today)
        logger.info(f"Downloading {self.name} {start}..{end} for tenant {self.tenant_id}")

        raw = await self.fetch_records(start, end, request.limit)
        records = self.prepare(dedupe_by_source_id(raw, self.source_id_key))
        total = len(records)
        success_count = error_count = 0

        yield ProgressEvent(total=total, processed=0)

        for i in range(0, total, self.batch_size):
            chunk = records[i:i + self.batch_size]
            rows = await self.resolve_references([self.transform(r) for r in chunk])
            ok, failed = await self.upsert_batch(rows)
            success_count += ok
            error_count += failed
            processed = i + len(chunk)
            logger.info(f"{self.table}: {processed}/{total} processed ({success_count} ok, {error_count} failed)")
            yield ProgressEvent(total, processed, success_count, error_count)
            if processed < total and self.batch_delay:
                await self._sleep(self.batch_delay)

        result = IngestionResult(
            success=True,
            count=total,
            success_count=success_count,
            error_count=error_count,
            date_range={"from": start, "to": end},
            message=self._message(total, success_count, error_count),
        )
        yield ProgressEvent(total, total, success_count, error_count, result=result)

    async def run(self, request: DownloadRequest,
                  progress_callback: Optional[Callable[[ProgressEvent], Awaitable[Any]]] = None,
                  today: Optional[date] = None) -> IngestionResult:
        result = None
        async for event in self.events(request, today):
            if event.result is not None:
                result = event.result
            elif progress_callback:
                await progress_callback(event)
        return result


async def stream_ingestion(job: IngestionJob, request: DownloadRequest, today: Optional[date] = None) -> AsyncIterator[str]:
    """SSE frames: progress after every batch, then one complete (or error) frame."""
    try:
        async for event in job.events(request, today):
            if event.result is None:
                yield format_sse("progress", event.to_dict())
            else:
                yield format_sse("complete", event.result.to_dict())
    except Exception as e:
        logger.error(f"Streaming {job.name} download failed: {e}")
        yield format_sse("error", {"error": job.error_code, "details": str(e), "timestamp": now_iso()})
