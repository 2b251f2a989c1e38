"""
Tests for the ingestion package
================================
Covers:
  - date range resolution and duplicate dropping
  - newest-primary-quote selection
  - batch upsert: 502 retry, 21000 per-record fallback, other failures
  - progress events, final result and SSE framing
  - Salesforce / NetSuite job specifics (FK lookups, currency names, paging)

Uses FakeSupabase and AsyncMock clients; nothing leaves the process.
"""

import json
import logging
import pytest
import sys
import os
from datetime import date
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from supabase_fakes import FakeSupabase
from ingestion import (
    CreditMemoIngestion,
    DownloadRequest,
    IngestionJob,
    InvoiceIngestion,
    OpportunityIngestion,
    OrderIngestion,
    ProgressEvent,
    QuoteIngestion,
    dedupe_by_source_id,
    format_sse,
    resolve_date_range,
    stream_ingestion,
)
from ingestion.netsuite_jobs import normalize_currency_name
from ingestion.salesforce_jobs import build_soql, newest_primary_quotes

TENANT_ID = "tenant-aaa"
TODAY = date(2025, 6, 1)


async def _no_sleep(_):
    return None


class _ListJob(IngestionJob):
    """Minimal job over an in-memory record list."""

    name = "widgets"
    table = "widgets_raw"
    on_conflict = "source_id"
    batch_size = 2
    error_code = "WIDGET_DOWNLOAD_ERROR"

    def __init__(self, supabase, records, **kwargs):
        kwargs.setdefault("sleep", _no_sleep)
        super().__init__(supabase, TENANT_ID, **kwargs)
        self.records = records

    async def fetch_records(self, start, end, limit=None):
        return self.records[:limit] if limit else self.records

    def transform(self, record):
        return {"source_id": record["Id"], "tenant_id": self.tenant_id}


def _records(n):
    return [{"Id": f"r{i}"} for i in range(n)]


class TestHelpers:

    def test_explicit_range_wins(self):
        req = DownloadRequest(dateFrom="2025-01-01T00:00:00Z", dateTo="2025-02-01", daysBack=10)
        assert resolve_date_range(req, TODAY) == ("2025-01-01", "2025-02-01")

    def test_days_back_range(self):
        assert resolve_date_range(DownloadRequest(daysBack=10), TODAY) == ("2025-05-22", "2025-06-01")

    def test_default_days_back(self):
        assert resolve_date_range(DownloadRequest(), TODAY)[0] == "2024-06-01"

    def test_days_back_is_bounded(self):
        with pytest.raises(ValueError):
            DownloadRequest(daysBack=0)
        with pytest.raises(ValueError):
            DownloadRequest(daysBack=2001)

    def test_dedupe_keeps_first_and_logs(self, caplog):
        records = [{"Id": "a", "n": 1}, {"Id": "b"}, {"Id": "a", "n": 2}]
        with caplog.at_level(logging.WARNING):
            out = dedupe_by_source_id(records, "Id")
        assert out == [{"Id": "a", "n": 1}, {"Id": "b"}]
        assert "Id=a" in caplog.text

    def test_format_sse(self):
        frame = format_sse("progress", {"total": 1})
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"type": "progress", "data": {"total": 1}}

    def test_progress_percentage(self):
        assert ProgressEvent(total=3, processed=1).percentage == 33
        assert ProgressEvent(total=3, processed=2).percentage == 67
        assert ProgressEvent(total=0, processed=0).percentage == 100
        assert ProgressEvent(total=0, processed=0).completed is True


class TestNewestPrimaryQuotes:

    def test_keeps_newest_primary_per_opportunity(self):
        quotes = [
            {"Id": "q1", "SBQQ__Opportunity2__c": "o1", "SBQQ__Primary__c": True, "CreatedDate": "2025-01-01T00:00:00.000+0000"},
            {"Id": "q2", "SBQQ__Opportunity2__c": "o1", "SBQQ__Primary__c": True, "CreatedDate": "2025-02-01T00:00:00.000+0000"},
            {"Id": "q3", "SBQQ__Opportunity2__c": "o2", "SBQQ__Primary__c": True, "CreatedDate": "2025-01-15T00:00:00Z"},
            {"Id": "q4", "SBQQ__Opportunity2__c": "o1", "SBQQ__Primary__c": False, "CreatedDate": "2025-03-01T00:00:00Z"},
        ]
        assert [q["Id"] for q in newest_primary_quotes(quotes)] == ["q2", "q3", "q4"]

    def test_quotes_without_opportunity_pass_through(self):
        quotes = [{"Id": "q1", "SBQQ__Primary__c": True}, {"Id": "q2", "SBQQ__Primary__c": True}]
        assert newest_primary_quotes(quotes) == quotes


class TestUpsertBatch:

    @pytest.mark.asyncio
    async def test_bad_gateway_is_retried(self):
        sb = FakeSupabase()
        sb.script("widgets_raw", [Exception("502 Bad Gateway")])
        job = _ListJob(sb, [])
        assert await job.upsert_batch([{"source_id": "a"}, {"source_id": "b"}]) == (2, 0)
        assert len(sb.calls_for("widgets_raw")) == 2

    @pytest.mark.asyncio
    async def test_row_affected_twice_falls_back_to_single_upserts(self):
        sb = FakeSupabase()
        sb.script("widgets_raw", [
            Exception({"code": "21000", "message": "cannot affect row a second time"}),
            Exception("duplicate key value"),
        ])
        job = _ListJob(sb, [])
        assert await job.upsert_batch([{"source_id": "a"}, {"source_id": "b"}]) == (1, 1)
        calls = sb.calls_for("widgets_raw")
        assert len(calls) == 3
        assert calls[2].op_args("upsert") == [({"source_id": "b"},)]

    @pytest.mark.asyncio
    async def test_other_errors_fail_the_batch(self):
        sb = FakeSupabase()
        sb.script("widgets_raw", [Exception("permission denied for table widgets_raw")])
        job = _ListJob(sb, [])
        assert await job.upsert_batch([{"source_id": "a"}, {"source_id": "b"}]) == (0, 2)
        assert len(sb.calls_for("widgets_raw")) == 1

    @pytest.mark.asyncio
    async def test_upsert_uses_conflict_column(self):
        sb = FakeSupabase()
        await _ListJob(sb, []).upsert_batch([{"source_id": "a"}])
        assert sb.calls_for("widgets_raw")[0].ops[0][2] == {"on_conflict": "source_id"}


class TestRun:

    @pytest.mark.asyncio
    async def test_progress_after_every_batch(self):
        job = _ListJob(FakeSupabase(), _records(5))
        events = []

        async def _progress(event):
            events.append((event.processed, event.total))

        result = await job.run(DownloadRequest(), progress_callback=_progress, today=TODAY)

        assert events == [(0, 5), (2, 5), (4, 5), (5, 5)]
        assert result.count == 5
        assert result.success_count == 5
        assert result.date_range == {"from": "2024-06-01", "to": "2025-06-01"}
        assert result.message == "Successfully downloaded and saved 5 widgets."

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_abort_run(self):
        sb = FakeSupabase()
        sb.script("widgets_raw", [Exception("permission denied")])
        result = await _ListJob(sb, _records(3)).run(DownloadRequest(), today=TODAY)
        assert (result.success_count, result.error_count) == (1, 2)
        assert result.success is True
        assert "2 had errors" in result.message

    @pytest.mark.asyncio
    async def test_duplicates_are_dropped_before_upsert(self):
        job = _ListJob(FakeSupabase(), [{"Id": "a"}, {"Id": "a"}, {"Id": "b"}])
        result = await job.run(DownloadRequest(), today=TODAY)
        assert result.count == 2

    @pytest.mark.asyncio
    async def test_limit_is_passed_to_fetch(self):
        result = await _ListJob(FakeSupabase(), _records(5)).run(DownloadRequest(limit=3), today=TODAY)
        assert result.count == 3

    @pytest.mark.asyncio
    async def test_result_dict_shape(self):
        result = await _ListJob(FakeSupabase(), _records(1)).run(DownloadRequest(), today=TODAY)
        d = result.to_dict()
        assert d["successCount"] == 1
        assert d["progress"] == {"total": 1, "processed": 1, "percentage": 100, "completed": True}
        assert d["dateRange"]["to"] == "2025-06-01"


class TestStreaming:

    @pytest.mark.asyncio
    async def test_progress_then_complete(self):
        job = _ListJob(FakeSupabase(), _records(3))
        frames = [json.loads(f[len("data: "):]) async for f in stream_ingestion(job, DownloadRequest(), TODAY)]
        assert [f["type"] for f in frames] == ["progress", "progress", "progress", "complete"]
        assert frames[-2]["data"]["percentage"] == 100
        assert frames[-1]["data"]["count"] == 3

    @pytest.mark.asyncio
    async def test_fetch_failure_becomes_error_frame(self):
        job = _ListJob(FakeSupabase(), [])
        job.fetch_records = AsyncMock(side_effect=RuntimeError("Salesforce is not connected"))
        frames = [json.loads(f[len("data: "):]) async for f in stream_ingestion(job, DownloadRequest(), TODAY)]
        assert len(frames) == 1
        assert frames[0]["type"] == "error"
        assert frames[0]["data"]["error"] == "WIDGET_DOWNLOAD_ERROR"
        assert "not connected" in frames[0]["data"]["details"]


class TestSalesforceJobs:

    def test_build_soql(self):
        soql = build_soql("Order", ["Id", "Status"], "2025-01-01", "2025-01-31", limit=10)
        assert soql == (
            "SELECT Id, Status FROM Order WHERE CreatedDate >= 2025-01-01T00:00:00Z "
            "AND CreatedDate <= 2025-01-31T23:59:59Z ORDER BY CreatedDate DESC LIMIT 10"
        )

    @pytest.mark.asyncio
    async def test_quote_download_resolves_opportunity(self):
        sb = FakeSupabase({"salesforce_opportunities": [{"id": 7, "salesforce_id": "006A"}]})
        client = MagicMock()
        client.soql_query = AsyncMock(return_value=[
            {"Id": "a0q1", "SBQQ__Opportunity2__c": "006A", "SBQQ__Primary__c": True, "SBQQ__NetAmount__c": 10},
            {"Id": "a0q2", "SBQQ__Opportunity2__c": "006B", "SBQQ__Primary__c": False},
        ])
        job = QuoteIngestion(sb, TENANT_ID, client=client, sleep=_no_sleep)

        result = await job.run(DownloadRequest(daysBack=30), today=TODAY)

        assert result.success_count == 2
        soql = client.soql_query.await_args.args[0]
        assert "FROM SBQQ__Quote__c" in soql and "SBQQ__Primary__c = true" in soql
        rows = sb.calls_for("salesforce_quotes")[0].op_args("upsert")[0][0]
        assert rows[0]["opportunity_id"] == 7
        assert rows[0]["net_amount"] == 10
        assert rows[1]["opportunity_id"] is None
        assert rows[1]["opportunity_id_raw"] == "006B"

    @pytest.mark.asyncio
    async def test_quote_single_upsert_updates_existing_row(self):
        sb = FakeSupabase({"salesforce_quotes": [{"id": 3}]})
        job = QuoteIngestion(sb, TENANT_ID, client=MagicMock(), sleep=_no_sleep)
        await job.upsert_one({"salesforce_id": "a0q1", "name": "Q", "created_at": "x"})
        update = sb.calls_for("salesforce_quotes")[1]
        payload = update.op_args("update")[0][0]
        assert "created_at" not in payload
        assert payload["name"] == "Q"
        assert update.op_args("eq") == [("salesforce_id", "a0q1"), ("tenant_id", TENANT_ID)]

    @pytest.mark.asyncio
    async def test_order_lookups_are_batched(self):
        sb = FakeSupabase({
            "salesforce_opportunities": [{"id": 1, "salesforce_id": "006A"}],
            "salesforce_quotes": [{"id": 2, "salesforce_id": "a0qA"}],
        })
        job = OrderIngestion(sb, TENANT_ID, client=MagicMock(), sleep=_no_sleep)
        rows = [job.transform({"Id": f"801{i}", "OpportunityId": "006A", "SBQQ__Quote__c": "a0qA"}) for i in range(3)]

        rows = await job.resolve_references(rows)

        assert {(r["opportunity_id"], r["quote_id"]) for r in rows} == {(1, 2)}
        lookups = sb.calls_for("salesforce_opportunities")
        assert len(lookups) == 1
        assert lookups[0].op_args("in_") == [("salesforce_id", ["006A"])]

    @pytest.mark.asyncio
    async def test_lookups_only_see_own_tenant(self):
        sb = FakeSupabase({
            "salesforce_opportunities": [
                {"id": 1, "salesforce_id": "006A", "tenant_id": "other-tenant"},
                {"id": 2, "salesforce_id": "006B", "tenant_id": TENANT_ID},
            ],
        })
        job = QuoteIngestion(sb, TENANT_ID, client=MagicMock(), sleep=_no_sleep)

        ids = await job.lookup_ids("salesforce_opportunities", ["006A", "006B"])

        assert ids == {"006B": 2}
        assert ("tenant_id", TENANT_ID) in sb.calls_for("salesforce_opportunities")[0].op_args("eq")

    def test_opportunity_transform(self):
        job = OpportunityIngestion(FakeSupabase(), TENANT_ID, client=MagicMock())
        row = job.transform({"Id": "006A", "SBQQ__Renewal__c": True, "Auto_Renew_Quote__c": False, "Amount": 5})
        assert row["salesforce_id"] == "006A"
        assert row["sbqq_renewal"] is True
        assert row["auto_renew_quote"] is False
        assert row["tenant_id"] == TENANT_ID
        assert row["raw_data"]["Amount"] == 5


class TestNetSuiteJobs:

    @pytest.mark.parametrize("name,code", [
        ("US Dollar", "USD"),
        ("euro", "EUR"),
        ("GBP", "GBP"),
        (None, "USD"),
        ("Martian Credit", "Martian Credit"),
    ])
    def test_normalize_currency_name(self, name, code):
        assert normalize_currency_name(name) == code

    def test_invoice_transform(self):
        job = InvoiceIngestion(FakeSupabase(), TENANT_ID, client=MagicMock())
        row = job.transform({
            "id": 123,
            "tranId": "INV-1",
            "entity": {"id": "9", "refName": "Acme"},
            "currency": {"refName": "Euro"},
            "total": "250.5",
        })
        assert row["netsuite_id"] == "123"
        assert row["entity_name"] == "Acme"
        assert row["entity_id"] == "9"
        assert row["currency_id"] == "EUR"
        assert row["total"] == 250.5

    @pytest.mark.asyncio
    async def test_fetch_pages_until_short_page(self):
        client = MagicMock()
        client.fetch_records = AsyncMock(side_effect=[[{"id": i} for i in range(100)], [{"id": 100}]])
        job = CreditMemoIngestion(FakeSupabase(), TENANT_ID, client=client)

        records = await job.fetch_records("2025-01-01", "2025-01-31")

        assert len(records) == 101
        offsets = [c.kwargs["offset"] for c in client.fetch_records.await_args_list]
        assert offsets == [0, 100]

    @pytest.mark.asyncio
    async def test_fetch_respects_limit(self):
        client = MagicMock()
        client.fetch_records = AsyncMock(return_value=[{"id": i} for i in range(30)])
        job = InvoiceIngestion(FakeSupabase(), TENANT_ID, client=client)

        records = await job.fetch_records("2025-01-01", "2025-01-31", limit=30)

        assert len(records) == 30
        assert client.fetch_records.await_args.kwargs["limit"] == 30
