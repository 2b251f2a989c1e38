"""
NetSuite → raw tables.

  invoice          → netsuite_raw_invoices    upsert batch 25
  creditmemo       → netsuite_credit_memos    upsert batch 25 (date column: trandate)
  customerpayment  → netsuite_payments        upsert batch 10

Records are listed by tranDate in pages of `fetch_page_size` and each
item is expanded through its self link (see NetSuiteClient.fetch_records).
"""

from __future__ import annotations

import logging
from typing import Optional

from ingestion.base import IngestionJob, ref_id, ref_name, to_float
from netsuite_client import NetSuiteClient

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY_NAME = "US Dollar"

CURRENCY_CODES = {
    "US Dollar": "USD",
    "United States Dollar": "USD",
    "Euro": "EUR",
    "British Pound": "GBP",
    "Pound Sterling": "GBP",
    "Canadian Dollar": "CAD",
    "Australian Dollar": "AUD",
    "Japanese Yen": "JPY",
    "Swiss Franc": "CHF",
    "Swedish Krona": "SEK",
    "Norwegian Krone": "NOK",
    "Danish Krone": "DKK",
    "Chinese Yuan": "CNY",
    "Indian Rupee": "INR",
    "Brazilian Real": "BRL",
    "Mexican Peso": "MXN",
    "South African Rand": "ZAR",
    "Korean Won": "KRW",
    "Singapore Dollar": "SGD",
    "Hong Kong Dollar": "HKD",
    "New Zealand Dollar": "NZD",
    "Polish Zloty": "PLN",
    "Czech Koruna": "CZK",
    "Hungarian Forint": "HUF",
    "Israeli Shekel": "ILS",
    "Turkish Lira": "TRY",
    "Russian Ruble": "RUB",
    "Thai Baht": "THB",
    "Malaysian Ringgit": "MYR",
    "Philippine Peso": "PHP",
    "Indonesian Rupiah": "IDR",
    "Vietnamese Dong": "VND",
}
# ISO codes map to themselves
CURRENCY_CODES.update({code: code for code in set(CURRENCY_CODES.values())})

_CURRENCY_CODES_LOWER = {k.lower(): v for k, v in CURRENCY_CODES.items()}


def normalize_currency_name(name: Optional[str]) -> str:
    """NetSuite currency display name → ISO code; unknown names pass through."""
    name = name or DEFAULT_CURRENCY_NAME
    code = CURRENCY_CODES.get(name) or _CURRENCY_CODES_LOWER.get(name.lower())
    if code:
        return code
    logger.warning(f"Unknown NetSuite currency name: {name}")
    return name


class NetSuiteIngestionJob(IngestionJob):
    record_type: str = ""
    on_conflict = "netsuite_id"
    source_id_key = "id"
    batch_delay = 0.2
    fetch_page_size = 50

    def __init__(self, supabase, tenant_id: str, client: NetSuiteClient, **kwargs):
        super().__init__(supabase, tenant_id, **kwargs)
        self.client = client

    async def fetch_records(self, start, end, limit=None):
        records: list[dict] = []
        offset = 0
        while limit is None or len(records) < limit:
            page_size = self.fetch_page_size if limit is None else min(self.fetch_page_size, limit - len(records))
            page = await self.client.fetch_records(self.record_type, start, end, limit=page_size, offset=offset)
            if not page:
                break
            records.extend(page)
            if len(page) < page_size:
                break
            offset += len(page)
        logger.info(f"Fetched {len(records)} NetSuite {self.record_type} records")
        return records


class InvoiceIngestion(NetSuiteIngestionJob):
    name = "invoices"
    record_type = "invoice"
    table = "netsuite_raw_invoices"
    batch_size = 25
    error_code = "NETSUITE_INVOICE_DOWNLOAD_ERROR"

    def transform(self, inv: dict) -> dict:
        return {
            "netsuite_id": str(inv.get("id")) if inv.get("id") is not None else None,
            "tran_id": inv.get("tranId"),
            "tran_date": inv.get("tranDate"),
            "entity_name": ref_name(inv.get("entity")),
            "entity_id": ref_id(inv.get("entity")),
            "total": to_float(inv.get("total")),
            "status": ref_name(inv.get("status")),
            "memo": inv.get("memo"),
            # ISO code; conversion uses our own exchange_rates, not NetSuite's
            "currency_id": normalize_currency_name(ref_name(inv.get("currency"))),
            "exchange_rate": 1,
            "created_date": inv.get("createdDate"),
            "last_modified_date": inv.get("lastModifiedDate"),
            "subtotal": to_float(inv.get("subTotal")),
            "tax_total": to_float(inv.get("taxTotal")),
            "discount_total": to_float(inv.get("discountTotal")),
            "custbody_cw_sfdcordernumber": inv.get("custbody_cw_sfdcordernumber"),
            "custbody_cw_sfdcopportunity": inv.get("custbody_cw_sfdcopportunity"),
            "custbody_cw_sfdcquote": inv.get("custbody_cw_sfdcquote"),
            "raw_data": inv,
            "tenant_id": self.tenant_id,
        }


class CreditMemoIngestion(NetSuiteIngestionJob):
    name = "credit memos"
    record_type = "creditmemo"
    table = "netsuite_credit_memos"
    batch_size = 25
    fetch_page_size = 100
    error_code = "NETSUITE_CREDIT_MEMO_DOWNLOAD_ERROR"

    def transform(self, cm: dict) -> dict:
        return {
            "netsuite_id": str(cm.get("id")) if cm.get("id") is not None else None,
            "tran_id": cm.get("tranId"),
            "trandate": cm.get("tranDate"),
            "entity_id": ref_id(cm.get("entity")),
            "entity_name": ref_name(cm.get("entity")),
            "memo": cm.get("memo"),
            "status": ref_name(cm.get("status")),
            "subtotal": to_float(cm.get("subTotal")),
            "tax_total": to_float(cm.get("taxTotal")),
            "total": to_float(cm.get("total")),
            "created_date": cm.get("createdDate"),
            "last_modified_date": cm.get("lastModifiedDate"),
            "raw_data": cm,
            "tenant_id": self.tenant_id,
        }


class PaymentIngestion(NetSuiteIngestionJob):
    name = "payments"
    record_type = "customerpayment"
    table = "netsuite_payments"
    batch_size = 10
    error_code = "NETSUITE_PAYMENT_DOWNLOAD_ERROR"

    def transform(self, p: dict) -> dict:
        return {
            "netsuite_id": str(p.get("id")) if p.get("id") is not None else None,
            "tran_id": p.get("tranId"),
            "tran_date": p.get("tranDate"),
            "entity_name": ref_name(p.get("customer")),
            "entity_id": ref_id(p.get("customer")),
            "total": to_float(p.get("total")),
            "status": ref_name(p.get("status")),
            "memo": p.get("memo"),
            "created_date": p.get("createdDate"),
            "last_modified_date": p.get("lastModifiedDate"),
            "payment_method": ref_name(p.get("account")),
            "reference_number": p.get("memo"),
            "raw_data": p,
            "tenant_id": self.tenant_id,
        }
