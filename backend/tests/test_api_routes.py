"""
API route tests (FastAPI TestClient)
=====================================
Auth, validation and error envelopes, rate limiting, and one happy path per
route family. The store is FakeSupabase patched in for server.get_supabase.
"""

import json
import pytest
import sys
import os
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fastapi.testclient import TestClient

import server
from auth_service import create_access_token
from supabase_fakes import FakeSupabase

client = TestClient(server.app)

TENANT_ID = "tenant-aaa"


def _auth(tenant_id=TENANT_ID):
    return {"Authorization": f"Bearer {create_access_token('u1', tenant_id, 'ops@acme.test')}"}


@pytest.fixture(autouse=True)
def _fresh_state():
    for limiter in (server.general_limiter, server.metrics_limiter, server.download_limiter):
        limiter.reset()
    server.metrics_cache.clear()
    server.flow_cache.clear()
    server.currency_cache.clear()
    yield


@pytest.fixture
def store():
    sb = FakeSupabase({
        "products_raw": [{"id": 1, "name": "Alpha", "is_active": True}],
        "pricebook_raw": [{"id": 1, "name": "Standard", "is_active": True}],
    })
    with patch("server.get_supabase", return_value=sb):
        yield sb


class TestHealth:

    def test_health(self):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "timestamp" in response.json()

    def test_root(self):
        assert "message" in client.get("/api/").json()


class TestAuth:

    def test_missing_header(self):
        response = client.get("/api/metrics/cost-metrics")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authorization header required"

    def test_wrong_scheme(self):
        response = client.get("/api/metrics/cost-metrics", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid authentication scheme"

    def test_malformed_header(self):
        response = client.get("/api/metrics/cost-metrics", headers={"Authorization": "Bearer"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid authorization header"

    def test_bad_token(self):
        response = client.get("/api/metrics/cost-metrics", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    def test_token_without_tenant_is_forbidden(self):
        response = client.get("/api/metrics/cost-metrics", headers=_auth(tenant_id=""))
        assert response.status_code == 403


class TestValidation:

    def test_page_size_out_of_range(self, store):
        response = client.post("/api/metrics/pricebook-metrics", json={"pageSize": 5000}, headers=_auth())
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"][0]["loc"][-1] == "pageSize"

    def test_unknown_deal_size(self, store):
        response = client.post(
            "/api/metrics/dashboard-unified", json={"filters": {"dealSize": "huge"}}, headers=_auth()
        )
        assert response.status_code == 400

    def test_sort_column_must_be_identifier(self, store):
        response = client.post(
            "/api/metrics/pricebook-metrics", json={"sortBy": "name;drop"}, headers=_auth()
        )
        assert response.status_code == 400


class TestRateLimit:

    def test_429_with_retry_after(self, store, monkeypatch):
        monkeypatch.setattr(server.metrics_limiter, "max_requests", 1)
        assert client.get("/api/metrics/cost-metrics", headers=_auth()).status_code == 200
        response = client.get("/api/metrics/cost-metrics", headers=_auth())
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    def test_limits_are_per_tenant(self, store, monkeypatch):
        monkeypatch.setattr(server.metrics_limiter, "max_requests", 1)
        assert client.get("/api/metrics/cost-metrics", headers=_auth("t1")).status_code == 200
        assert client.get("/api/metrics/cost-metrics", headers=_auth("t2")).status_code == 200


class TestMetricRoutes:

    def test_cost_metrics(self, store):
        response = client.get("/api/metrics/cost-metrics", headers=_auth())
        assert response.status_code == 200
        assert response.json()["summary"]["total_products"] == 1

    def test_pricebook_metrics(self, store):
        response = client.post("/api/metrics/pricebook-metrics", json={"page": 1, "pageSize": 10}, headers=_auth())
        assert response.status_code == 200
        assert response.json()["data"][0]["name"] == "Standard"

    def test_products_metrics_defaults(self, store):
        response = client.post("/api/metrics/products-metrics", json={}, headers=_auth())
        assert response.status_code == 200
        assert response.json()["totalRecords"] == 1

    def test_auto_renewal_rate(self, store):
        response = client.post(
            "/api/metrics/auto-renewal-rate",
            json={"filters": {"daysBack": 90, "customerTier": ["Gold"]}},
            headers=_auth(),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "no_data"
        assert body["metric_name"] == "Auto-renewed opportunities (%)"

    def test_dashboard_unified(self, store):
        response = client.post("/api/metrics/dashboard-unified", json={"filters": {"daysBack": 30}}, headers=_auth())
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["data"]["stages"]) == 4

    def test_store_failure_is_an_error_envelope(self):
        with patch("server.get_supabase", side_effect=RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")):
            response = client.get("/api/metrics/cost-metrics", headers=_auth())
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "COST_METRICS_ERROR"
        assert "SUPABASE_URL" in body["details"]
        assert "timestamp" in body


class TestFlowRoutes:

    @pytest.mark.parametrize("path", [
        "/api/flow/period-comparison",
        "/api/flow/invoice-to-payment",
        "/api/flow/credit-memo-ratio",
        "/api/flow/opportunity-summary",
    ])
    def test_flow_routes_answer(self, store, path):
        response = client.post(path, json={"filters": {"customerTier": "all"}}, headers=_auth())
        assert response.status_code == 200

    def test_period_comparison_is_cached(self, store):
        client.post("/api/flow/period-comparison", json={}, headers=_auth())
        executed = len(store.executed)
        client.post("/api/flow/period-comparison", json={}, headers=_auth())
        assert len(store.executed) == executed

    def test_refresh_views_clears_flow_cache(self, store):
        client.post("/api/flow/period-comparison", json={}, headers=_auth())
        assert len(server.flow_cache) == 1
        response = client.post("/api/flow/refresh-views", headers=_auth())
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert len(server.flow_cache) == 0


class TestDownloadRoutes:

    def test_unknown_object(self, store):
        response = client.post("/api/salesforce/download-accounts", json={}, headers=_auth())
        assert response.status_code == 404

    def test_netsuite_json_response(self, store):
        ns = MagicMock()
        ns.fetch_records = AsyncMock(return_value=[{"id": "1", "tranId": "INV-1", "total": 10}])
        with patch("server.NetSuiteClient.from_env", return_value=ns):
            response = client.post("/api/netsuite/download-invoices", json={"daysBack": 30}, headers=_auth())
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["successCount"] == 1
        assert store.calls_for("netsuite_raw_invoices")[0].op_args("upsert")[0][0][0]["tenant_id"] == TENANT_ID

    def test_netsuite_not_configured(self, store):
        with patch("server.NetSuiteClient.from_env", side_effect=Exception("Missing NetSuite configuration: NS_ACCOUNT_ID")):
            response = client.post("/api/netsuite/download-payments", json={}, headers=_auth())
        assert response.status_code == 500
        assert response.json()["error"] == "NETSUITE_PAYMENT_DOWNLOAD_ERROR"

    def test_salesforce_stream(self, store):
        sf = MagicMock()
        sf.soql_query = AsyncMock(return_value=[{"Id": "006A"}, {"Id": "006B"}])
        with patch("server._salesforce_client", return_value=sf):
            response = client.post(
                "/api/salesforce/download-opportunities", json={"stream": True, "daysBack": 7}, headers=_auth()
            )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = [json.loads(line[len("data: "):]) for line in response.text.split("\n\n") if line]
        assert frames[0]["type"] == "progress"
        assert frames[-1]["type"] == "complete"
        assert frames[-1]["data"]["count"] == 2

    def test_download_without_body(self, store):
        sf = MagicMock()
        sf.soql_query = AsyncMock(return_value=[])
        with patch("server._salesforce_client", return_value=sf):
            response = client.post("/api/salesforce/download-orders", headers=_auth())
        assert response.status_code == 200
        assert response.json()["count"] == 0


class TestCurrencyRoute:

    def test_rate_lookup(self, store):
        store.rpc_results["get_exchange_rate"] = 1.08
        response = client.get("/api/currency/exchange-rate?from_currency=eur&date=2025-05-01", headers=_auth())
        assert response.status_code == 200
        assert response.json()["rate"] == 1.08
        assert store.rpc_calls[0][1]["p_tenant_id"] == TENANT_ID

    def test_missing_rate_is_404(self, store):
        response = client.get("/api/currency/exchange-rate?from_currency=XYZ&date=2025-05-01", headers=_auth())
        assert response.status_code == 404
        assert response.json()["error"] == "EXCHANGE_RATE_NOT_FOUND"

    def test_convert_to_usd(self, store):
        store.rpc_results["get_exchange_rate"] = 1.1
        response = client.get("/api/currency/convert?amount=200&currency=eur&date=2025-05-01", headers=_auth())
        assert response.status_code == 200
        assert response.json()["amountUsd"] == 220.0
        assert response.json()["currency"] == "EUR"


class TestEntityListingRoutes:

    @pytest.fixture
    def views(self):
        sb = FakeSupabase({
            "mv_opportunities_with_usd": [
                {"opportunity_id": "o1", "tenant_id": TENANT_ID, "opportunity_created_date": "2025-05-01",
                 "customer_country": "US"},
                {"opportunity_id": "o2", "tenant_id": TENANT_ID, "opportunity_created_date": "2025-05-02",
                 "customer_country": "DE"},
                {"opportunity_id": "o3", "tenant_id": "tenant-bbb", "opportunity_created_date": "2025-05-03",
                 "customer_country": "US"},
            ],
            "mv_credit_memos_with_usd": [
                {"credit_memo_id": "cm1", "tenant_id": TENANT_ID, "credit_memo_created_date": "2025-05-01"},
            ],
        })
        with patch("server.get_supabase", return_value=sb):
            yield sb

    def test_opportunities(self, views):
        response = client.get("/api/salesforce/opportunities?region=US,FR&pageSize=10", headers=_auth())
        assert response.status_code == 200
        body = response.json()
        assert [r["opportunity_id"] for r in body["data"]] == ["o1"]
        assert body["totalRecords"] == 1
        assert body["pageSize"] == 10
        assert views.executed[0].op_args("in_") == [("customer_country", ["US", "FR"])]

    def test_credit_memos(self, views):
        response = client.get("/api/netsuite/credit-memos", headers=_auth())
        assert response.status_code == 200
        assert response.json()["data"][0]["credit_memo_id"] == "cm1"

    def test_unknown_salesforce_object(self, views):
        assert client.get("/api/salesforce/accounts", headers=_auth()).status_code == 404

    def test_bad_paging_is_a_validation_error(self, views):
        response = client.get("/api/salesforce/quotes?pageSize=5000", headers=_auth())
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_store_failure(self, views):
        views.script("mv_orders_with_usd", [Exception("canceling statement due to statement timeout")])
        response = client.get("/api/salesforce/orders", headers=_auth())
        assert response.status_code == 500
        assert response.json()["error"] == "SALESFORCE_ORDERS_ERROR"

    def test_requires_auth(self):
        assert client.get("/api/salesforce/opportunities").status_code == 401
