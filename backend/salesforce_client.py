"""
Salesforce REST client (read-only).

SOQL queries only. Every query passes the textual write guard in
query_guard before it leaves the process. Tokens live in the
integration_tokens table, one row per (provider, tenant); the secret
fields are Fernet-encrypted at rest.

Auth flow for a query:
  1. load the stored token bundle for the tenant
  2. run the query; on 401 refresh once through the OAuth refresh_token
     grant and run it again
  3. a second 401 raises SalesforceAPIError
"""

import httpx
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from urllib.parse import quote

from crypto_utils import decrypt_token_fields, encrypt_token_fields
from db import run_db
from query_guard import SALESFORCE_FORBIDDEN, ensure_read_only
from retry_policy import RetryPolicy, exponential_backoff, is_transient_http_status

logger = logging.getLogger(__name__)

SF_DOMAIN = os.environ.get("SF_DOMAIN", "https://login.salesforce.com")
SF_CLIENT_ID = os.environ.get("SF_CLIENT_ID", "")
SF_CLIENT_SECRET = os.environ.get("SF_CLIENT_SECRET", "")
SF_API_VERSION = os.environ.get("SF_API_VERSION", "v62.0")
SF_TIMEOUT = 60.0
SF_QUERY_BATCH_SIZE = 2000

TOKENS_TABLE = "integration_tokens"
PROVIDER = "salesforce"


class SalesforceAPIError(Exception):
    """Custom exception for Salesforce API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    status = getattr(exc, "status_code", None)
    return status is not None and is_transient_http_status(status)


def default_retry_policy() -> RetryPolicy:
    """3 tries, 0.3s · 2^i plus up to 0.1s jitter, on 429/5xx and network errors."""
    return RetryPolicy(
        max_attempts=3,
        backoff=exponential_backoff(0.3, jitter=0.1),
        retryable=_is_transient,
        label="Salesforce request",
    )


def to_soql_datetime(value: str, end_of_day: bool = False) -> str:
    """ISO date or datetime → SOQL literal (YYYY-MM-DDTHH:MM:SSZ)."""
    if "T" in value:
        return value if value.endswith("Z") else f"{value}Z"
    return f"{value}T23:59:59Z" if end_of_day else f"{value}T00:00:00Z"


def build_soql_date_where(date_from: str, date_to: str, field: str = "CreatedDate") -> str:
    return (
        f"{field} >= {to_soql_datetime(date_from)} "
        f"AND {field} <= {to_soql_datetime(date_to, end_of_day=True)}"
    )


class SalesforceTokenStore:
    """Per-tenant token bundle in integration_tokens."""

    def __init__(self, supabase, tenant_id: str):
        if not tenant_id:
            raise ValueError("Organization id is required for Salesforce token operations")
        self.supabase = supabase
        self.tenant_id = tenant_id

    async def get(self) -> Optional[Dict[str, Any]]:
        result = await run_db(
            lambda: self.supabase.table(TOKENS_TABLE)
            .select("token")
            .eq("provider", PROVIDER)
            .eq("tenant_id", self.tenant_id)
            .maybe_single()
            .execute()
        )
        row = result.data if result else None
        if not row or not row.get("token"):
            return None
        return decrypt_token_fields(row["token"])

    async def set(self, token: Dict[str, Any]) -> None:
        await run_db(
            lambda: self.supabase.table(TOKENS_TABLE)
            .upsert(
                {"provider": PROVIDER, "tenant_id": self.tenant_id, "token": encrypt_token_fields(token)},
                on_conflict="provider,tenant_id",
            )
            .execute()
        )

    async def clear(self) -> None:
        await run_db(
            lambda: self.supabase.table(TOKENS_TABLE)
            .delete()
            .eq("provider", PROVIDER)
            .eq("tenant_id", self.tenant_id)
            .execute()
        )


class SalesforceClient:
    """Read-only SOQL client for one tenant's connected org."""

    def __init__(self, token_store: SalesforceTokenStore, transport: Optional[httpx.AsyncBaseTransport] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.token_store = token_store
        self._transport = transport
        self.retry_policy = retry_policy or default_retry_policy()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=SF_TIMEOUT, transport=self._transport)

    async def _token(self) -> Dict[str, Any]:
        token = await self.token_store.get()
        if not token or not token.get("access_token") or not token.get("instance_url"):
            raise SalesforceAPIError("Salesforce is not connected for this organization", status_code=401)
        return token

    # ==================== OAuth ====================

    async def refresh_access_token(self) -> Dict[str, Any]:
        """refresh_token grant; the stored refresh token is kept when Salesforce omits it."""
        saved = await self._token()
        if not saved.get("refresh_token"):
            raise SalesforceAPIError("No refresh token stored, reconnect Salesforce", status_code=401)

        async def _post():
            async with self._client() as client:
                response = await client.post(f"{SF_DOMAIN}/services/oauth2/token", data={
                    "grant_type": "refresh_token",
                    "refresh_token": saved["refresh_token"],
                    "client_id": SF_CLIENT_ID,
                    "client_secret": SF_CLIENT_SECRET,
                })
            if response.status_code != 200:
                logger.error(f"Salesforce token refresh failed: {response.status_code} {response.text[:300]}")
                raise SalesforceAPIError(f"Token refresh failed: {response.status_code}", response.status_code)
            return response.json()

        data = await self.retry_policy.run(_post)
        token = {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token") or saved["refresh_token"],
            "instance_url": data.get("instance_url") or saved["instance_url"],
            "issued_at": data.get("issued_at") or datetime.now(timezone.utc).isoformat(),
            "token_type": data.get("token_type", "Bearer"),
        }
        await self.token_store.set(token)
        logger.info(f"Refreshed Salesforce token for tenant {self.token_store.tenant_id}")
        return token

    # ==================== Query ====================

    async def _get(self, client: httpx.AsyncClient, url: str, access_token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Sforce-Query-Options": f"batchSize={SF_QUERY_BATCH_SIZE}",
        }

        async def _once():
            response = await client.get(url, headers=headers)
            if is_transient_http_status(response.status_code):
                raise SalesforceAPIError(f"HTTP {response.status_code}", response.status_code)
            return response

        return await self.retry_policy.run(_once)

    async def _run_query(self, soql: str, token: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        """All pages of a query; None when the token was rejected."""
        instance_url = token["instance_url"]
        url = f"{instance_url}/services/data/{SF_API_VERSION}/query/?q={quote(soql, safe='')}"
        records: List[Dict[str, Any]] = []

        async with self._client() as client:
            while url:
                response = await self._get(client, url, token["access_token"])
                if response.status_code == 401:
                    return None
                if response.status_code >= 400:
                    logger.error(f"Salesforce query failed {response.status_code}: {response.text[:500]}")
                    raise SalesforceAPIError(
                        f"Salesforce query failed ({response.status_code}): {response.text[:500]}",
                        response.status_code,
                    )
                payload = response.json()
                records.extend(payload.get("records", []))
                if payload.get("done", True) or not payload.get("nextRecordsUrl"):
                    break
                url = f"{instance_url}{payload['nextRecordsUrl']}"
        return records

    async def soql_query(self, soql: str) -> List[Dict[str, Any]]:
        ensure_read_only(soql, SALESFORCE_FORBIDDEN)
        records = await self._run_query(soql, await self._token())
        if records is None:
            token = await self.refresh_access_token()
            records = await self._run_query(soql, token)
            if records is None:
                raise SalesforceAPIError("Unauthorized after refresh", status_code=401)
        logger.info(f"SOQL returned {len(records)} records")
        return records
