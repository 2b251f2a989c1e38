"""
NetSuite REST client (read-only, token-based auth).

Requests are signed with OAuth 1.0a / HMAC-SHA256 using the
consumer + token credentials of an integration record:

    base string  = METHOD & enc(url) & enc(sorted k=v params)
    signing key  = consumer_secret & token_secret
    header       = OAuth realm="<NS_ACCOUNT_ID>", k="v", ..., oauth_signature="..."

Query parameters take part in the signature but not in the header.
The hostname uses the account id lowercased with '_' → '-'
(1234567_SB1 → 1234567-sb1).
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import os
import secrets
import time
from datetime import date
from typing import Optional, Dict, Any, List
from urllib.parse import quote, urlsplit, parse_qsl

import httpx

from query_guard import NETSUITE_FORBIDDEN, ensure_read_only
from retry_policy import RetryPolicy, exponential_backoff, is_transient_http_status

logger = logging.getLogger(__name__)

NS_ACCOUNT_ID = os.environ.get("NS_ACCOUNT_ID", "")
NS_CONSUMER_KEY = os.environ.get("NS_CONSUMER_KEY", "")
NS_CONSUMER_SECRET = os.environ.get("NS_CONSUMER_SECRET", "")
NS_TOKEN_ID = os.environ.get("NS_TOKEN_ID", "")
NS_TOKEN_SECRET = os.environ.get("NS_TOKEN_SECRET", "")

NS_TIMEOUT = 60.0
RATE_LIMIT_RETRIES = 3
DETAIL_FETCH_DELAY = 0.05

# record type → REST record endpoint
RECORD_ENDPOINTS = {
    "invoice": "invoice",
    "creditmemo": "creditmemo",
    "customerpayment": "customerpayment",
}


class NetSuiteAPIError(Exception):
    """Custom exception for NetSuite API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _enc(value: str) -> str:
    # RFC 3986 minus the characters JavaScript's encodeURIComponent leaves alone
    return quote(str(value), safe="-_.!~*'()")


def normalize_account_id(account_id: str) -> str:
    return account_id.lower().replace("_", "-")


def format_date_for_netsuite(value: str) -> str:
    """yyyy-MM-dd → yy/MM/dd"""
    d = date.fromisoformat(value[:10])
    return d.strftime("%y/%m/%d")


def build_tran_date_query(date_from: Optional[str], date_to: Optional[str]) -> Optional[str]:
    conditions = []
    if date_from:
        conditions.append(f'tranDate ON_OR_AFTER "{format_date_for_netsuite(date_from)}"')
    if date_to:
        conditions.append(f'tranDate ON_OR_BEFORE "{format_date_for_netsuite(date_to)}"')
    return " AND ".join(conditions) or None


def _is_rate_limited(exc: BaseException) -> bool:
    return getattr(exc, "status_code", None) == 429


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    status = getattr(exc, "status_code", None)
    return status is not None and is_transient_http_status(status)


class NetSuiteClient:
    """Client for NetSuite REST record and SuiteQL endpoints."""

    def __init__(self, account_id: str, consumer_key: str, consumer_secret: str, token_id: str,
                 token_secret: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep=asyncio.sleep):
        self.realm = account_id
        self.account_id = normalize_account_id(account_id)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.token_id = token_id
        self.token_secret = token_secret
        self._transport = transport
        self._sleep = sleep
        # 1s, 2s, 4s on 429
        self.record_retry = RetryPolicy(
            max_attempts=1 + RATE_LIMIT_RETRIES,
            backoff=exponential_backoff(1.0),
            retryable=_is_rate_limited,
            sleep=sleep,
            label="NetSuite record request",
        )
        self.suiteql_retry = RetryPolicy(
            max_attempts=3,
            backoff=exponential_backoff(0.3, jitter=0.1),
            retryable=_is_transient,
            sleep=sleep,
            label="NetSuite SuiteQL request",
        )

    @classmethod
    def from_env(cls, **kwargs) -> "NetSuiteClient":
        settings = {
            "NS_ACCOUNT_ID": NS_ACCOUNT_ID,
            "NS_CONSUMER_KEY": NS_CONSUMER_KEY,
            "NS_CONSUMER_SECRET": NS_CONSUMER_SECRET,
            "NS_TOKEN_ID": NS_TOKEN_ID,
            "NS_TOKEN_SECRET": NS_TOKEN_SECRET,
        }
        missing = [k for k, v in settings.items() if not v]
        if missing:
            raise NetSuiteAPIError(f"Missing NetSuite configuration: {', '.join(missing)}")
        return cls(NS_ACCOUNT_ID, NS_CONSUMER_KEY, NS_CONSUMER_SECRET, NS_TOKEN_ID, NS_TOKEN_SECRET, **kwargs)

    @property
    def base_url(self) -> str:
        return f"https://{self.account_id}.suitetalk.api.netsuite.com/services/rest"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=NS_TIMEOUT, transport=self._transport)

    # ==================== OAuth 1.0a ====================

    def sign(self, method: str, url: str, query_params: Optional[Dict[str, str]] = None,
             nonce: Optional[str] = None, timestamp: Optional[str] = None) -> str:
        """Authorization header for `method url` (url without its query string)."""
        oauth_params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_token": self.token_id,
            "oauth_nonce": nonce or secrets.token_hex(16),
            "oauth_timestamp": timestamp or str(int(time.time())),
            "oauth_signature_method": "HMAC-SHA256",
            "oauth_version": "1.0",
        }
        all_params = {**oauth_params, **(query_params or {})}
        param_string = "&".join(f"{_enc(k)}={_enc(all_params[k])}" for k in sorted(all_params))
        base_string = "&".join([method.upper(), _enc(url), _enc(param_string)])
        signing_key = f"{self.consumer_secret}&{self.token_secret}"
        digest = hmac.new(signing_key.encode(), base_string.encode(), hashlib.sha256).digest()

        header_params = {**oauth_params, "oauth_signature": base64.b64encode(digest).decode()}
        pairs = ", ".join(f'{_enc(k)}="{_enc(header_params[k])}"' for k in sorted(header_params))
        return f'OAuth realm="{self.realm}", {pairs}'

    # ==================== Requests ====================

    async def _signed_get(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        async def _once():
            headers = {"Authorization": self.sign("GET", url, params)}
            async with self._client() as client:
                response = await client.get(url, params=params, headers=headers)
            if response.status_code == 429:
                logger.warning("NetSuite rate limit hit")
                raise NetSuiteAPIError("Rate limit exceeded", 429)
            if response.status_code >= 400:
                raise NetSuiteAPIError(
                    f"NetSuite API error: {response.status_code} - {response.text[:500]}",
                    response.status_code,
                )
            return response.json()

        return await self.record_retry.run(_once)

    async def fetch_data(self, endpoint: str, query_params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await self._signed_get(f"{self.base_url}/record/v1/{endpoint}", dict(query_params or {}))

    async def fetch_record_by_self_link(self, self_link: str) -> Dict[str, Any]:
        parts = urlsplit(self_link)
        url = f"{parts.scheme}://{parts.netloc}{parts.path}"
        params = dict(parse_qsl(parts.query))
        if "/invoice/" in parts.path:
            params.setdefault("expandSubResources", "true")
        return await self._signed_get(url, params)

    async def fetch_records(self, record_type: str, date_from: Optional[str] = None, date_to: Optional[str] = None,
                            limit: int = 1000, offset: int = 0) -> List[Dict[str, Any]]:
        """List a record type by tranDate, then load each item through its self link.

        A failed detail fetch keeps the list item instead of aborting the run.
        """
        params = {"limit": str(limit), "offset": str(offset)}
        q = build_tran_date_query(date_from, date_to)
        if q:
            params["q"] = q

        listing = await self.fetch_data(RECORD_ENDPOINTS[record_type], params)
        items = listing.get("items") or []
        if not items:
            return []

        logger.info(f"Fetching details for {len(items)} NetSuite {record_type} records")
        detailed = []
        for i, item in enumerate(items):
            self_link = next(
                (link.get("href") for link in item.get("links", []) if link.get("rel") == "self"),
                None,
            )
            if not self_link:
                logger.warning(f"No self link for {record_type} {item.get('id')}")
                detailed.append(item)
                continue
            try:
                detailed.append(await self.fetch_record_by_self_link(self_link))
            except NetSuiteAPIError as e:
                logger.warning(f"Detail fetch failed for {record_type} {item.get('id')}, keeping list item: {e}")
                detailed.append(item)
            if i < len(items) - 1:
                await self._sleep(DETAIL_FETCH_DELAY)
        return detailed

    async def suiteql(self, sql: str, parameters: Optional[list] = None) -> List[Dict[str, Any]]:
        ensure_read_only(sql, NETSUITE_FORBIDDEN)
        url = f"{self.base_url}/query/v1/suiteql"

        async def _once():
            headers = {
                "Authorization": self.sign("POST", url),
                "Content-Type": "application/json",
                "Prefer": "transient",
            }
            async with self._client() as client:
                response = await client.post(url, json={"q": sql, "parameters": parameters or []}, headers=headers)
            if response.status_code >= 400:
                raise NetSuiteAPIError(
                    f"NetSuite request failed ({response.status_code}): {response.text[:500]}",
                    response.status_code,
                )
            return response.json()

        payload = await self.suiteql_retry.run(_once)
        items = payload.get("items") or []
        logger.info(f"SuiteQL returned {len(items)} records")
        return items
