"""
Salesforce → raw tables.

  Opportunity      → salesforce_opportunities   batch 25
  SBQQ__Quote__c   → salesforce_quotes          batch 10, primary quotes only
  Order            → salesforce_orders          batch 10

Quotes and orders carry both the raw Salesforce id of their parent
(`*_id_raw`) and the local row id (`opportunity_id`, `quote_id`) when the
parent has already been ingested; download opportunities before quotes
and quotes before orders.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from db import run_db
from ingestion.base import IngestionJob, now_iso
from salesforce_client import SalesforceClient, build_soql_date_where

logger = logging.getLogger(__name__)

OPPORTUNITIES_TABLE = "salesforce_opportunities"
QUOTES_TABLE = "salesforce_quotes"
ORDERS_TABLE = "salesforce_orders"

OPPORTUNITY_FIELDS = [
    "Id", "Name", "CreatedDate", "CloseDate", "Amount", "StageName", "Type", "LeadSource",
    "Description", "Probability", "IsClosed", "IsWon", "AccountId", "OwnerId", "CurrencyIsoCode",
    "LastModifiedDate", "Customer_Tier__c", "Market_Segment__c", "Channel__c", "CustomerCountry__c",
    "SBQQ__Renewal__c", "Auto_Renew_Quote__c",
]

QUOTE_FIELDS = [
    "Id", "Name", "SBQQ__Status__c", "SBQQ__ExpirationDate__c", "CreatedDate", "SBQQ__EndDate__c",
    "SBQQ__NetAmount__c", "SBQQ__Type__c", "SBQQ__Account__c", "SBQQ__PrimaryContact__c",
    "SBQQ__BillingCountry__c", "SBQQ__ShippingCountry__c", "SBQQ__BillingCity__c", "SBQQ__ShippingCity__c",
    "SBQQ__BillingState__c", "SBQQ__ShippingState__c", "SBQQ__PaymentTerms__c", "SBQQ__BillingFrequency__c",
    "SBQQ__ContractingMethod__c", "SBQQ__Ordered__c", "SBQQ__Primary__c", "Renewal__c", "Amendment__c",
    "Cancellation_Quote__c", "ApprovalStatus__c", "Subsidiary__c", "CustomerCountry__c",
    "OppShippingCountry__c", "Quote_Total__c", "Total_ARR__c", "New_ARR__c",
    "Annual_Recurring_Revenue__c", "CurrencyIsoCode", "OwnerId", "SBQQ__Opportunity2__c",
    "LastModifiedDate",
]

ORDER_FIELDS = [
    "Id", "OrderNumber", "OpportunityId", "Status", "EffectiveDate", "TotalAmount", "CreatedDate",
    "Type", "SBQQ__Quote__c", "Billing_Frequency__c", "Shipping_Address_Country_Code__c",
    "CurrencyIsoCode", "LastModifiedDate", "AccountId", "OwnerId",
]


def build_soql(sobject: str, fields: list[str], start: str, end: str, limit: Optional[int] = None,
               extra_where: str = "") -> str:
    where = build_soql_date_where(start, end)
    if extra_where:
        where = f"{where} AND {extra_where}"
    soql = f"SELECT {', '.join(fields)} FROM {sobject} WHERE {where} ORDER BY CreatedDate DESC"
    if limit:
        soql += f" LIMIT {limit}"
    return soql


def _created_at(record: dict) -> datetime:
    value = (record.get("CreatedDate") or "").replace("Z", "+00:00")
    # Salesforce sends +0000 without a colon
    if len(value) > 5 and value[-5] in "+-" and ":" not in value[-5:]:
        value = f"{value[:-2]}:{value[-2:]}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def newest_primary_quotes(quotes: list[dict]) -> list[dict]:
    """One primary quote per opportunity (the newest); non-primary quotes pass through."""
    newest: dict[str, dict] = {}
    for q in quotes:
        opp = q.get("SBQQ__Opportunity2__c")
        if opp and q.get("SBQQ__Primary__c") is True:
            current = newest.get(opp)
            if current is None or _created_at(q) > _created_at(current):
                newest[opp] = q

    kept = []
    for q in quotes:
        opp = q.get("SBQQ__Opportunity2__c")
        if opp and q.get("SBQQ__Primary__c") is True:
            if newest[opp].get("Id") != q.get("Id"):
                logger.info(f"Skipping older primary quote {q.get('Id')} for opportunity {opp}")
                continue
        kept.append(q)
    return kept


class SalesforceIngestionJob(IngestionJob):
    on_conflict = "salesforce_id"
    source_id_key = "Id"

    def __init__(self, supabase, tenant_id: str, client: SalesforceClient, **kwargs):
        super().__init__(supabase, tenant_id, **kwargs)
        self.client = client


class OpportunityIngestion(SalesforceIngestionJob):
    name = "opportunities"
    table = OPPORTUNITIES_TABLE
    batch_size = 25
    error_code = "SALESFORCE_OPPORTUNITY_DOWNLOAD_ERROR"

    async def fetch_records(self, start, end, limit=None):
        return await self.client.soql_query(build_soql("Opportunity", OPPORTUNITY_FIELDS, start, end, limit))

    def transform(self, o: dict) -> dict:
        return {
            "salesforce_id": o.get("Id"),
            "name": o.get("Name"),
            "created_date": o.get("CreatedDate"),
            "close_date": o.get("CloseDate"),
            "amount": o.get("Amount"),
            "stage_name": o.get("StageName"),
            "type": o.get("Type"),
            "lead_source": o.get("LeadSource"),
            "customer_tier": o.get("Customer_Tier__c"),
            "market_segment": o.get("Market_Segment__c"),
            "channel": o.get("Channel__c"),
            "currency_iso_code": o.get("CurrencyIsoCode"),
            "customer_country": o.get("CustomerCountry__c"),
            "sbqq_renewal": o.get("SBQQ__Renewal__c"),
            "auto_renew_quote": o.get("Auto_Renew_Quote__c"),
            "raw_data": o,
            "fetched_at": now_iso(),
            "tenant_id": self.tenant_id,
        }


class QuoteIngestion(SalesforceIngestionJob):
    name = "quotes"
    table = QUOTES_TABLE
    batch_size = 10
    error_code = "SALESFORCE_QUOTE_DOWNLOAD_ERROR"

    async def fetch_records(self, start, end, limit=None):
        soql = build_soql("SBQQ__Quote__c", QUOTE_FIELDS, start, end, limit, extra_where="SBQQ__Primary__c = true")
        return await self.client.soql_query(soql)

    def prepare(self, records):
        return newest_primary_quotes(records)

    def transform(self, q: dict) -> dict:
        now = now_iso()
        return {
            "salesforce_id": q.get("Id"),
            "name": q.get("Name"),
            "status": q.get("SBQQ__Status__c"),
            "expiration_date": q.get("SBQQ__ExpirationDate__c"),
            "start_date": q.get("CreatedDate"),
            "end_date": q.get("SBQQ__EndDate__c"),
            "net_amount": q.get("SBQQ__NetAmount__c"),
            "quote_type": q.get("SBQQ__Type__c"),
            "account_id": q.get("SBQQ__Account__c"),
            "primary_contact_id": q.get("SBQQ__PrimaryContact__c"),
            "billing_country": q.get("SBQQ__BillingCountry__c"),
            "shipping_country": q.get("SBQQ__ShippingCountry__c"),
            "billing_city": q.get("SBQQ__BillingCity__c"),
            "shipping_city": q.get("SBQQ__ShippingCity__c"),
            "billing_state": q.get("SBQQ__BillingState__c"),
            "shipping_state": q.get("SBQQ__ShippingState__c"),
            "payment_terms": q.get("SBQQ__PaymentTerms__c"),
            "billing_frequency": q.get("SBQQ__BillingFrequency__c"),
            "contracting_method": q.get("SBQQ__ContractingMethod__c"),
            "is_ordered": q.get("SBQQ__Ordered__c"),
            "is_primary": q.get("SBQQ__Primary__c"),
            "is_renewal": q.get("Renewal__c"),
            "is_amendment": q.get("Amendment__c"),
            "is_cancellation": q.get("Cancellation_Quote__c"),
            "approval_status": q.get("ApprovalStatus__c"),
            "subsidiary": q.get("Subsidiary__c"),
            "customer_country": q.get("CustomerCountry__c"),
            "opp_shipping_country": q.get("OppShippingCountry__c"),
            "quote_total": q.get("Quote_Total__c"),
            "total_arr": q.get("Total_ARR__c"),
            "new_arr": q.get("New_ARR__c"),
            "annual_recurring_revenue": q.get("Annual_Recurring_Revenue__c"),
            "currency_iso_code": q.get("CurrencyIsoCode"),
            "owner_id": q.get("OwnerId"),
            "opportunity_id_raw": q.get("SBQQ__Opportunity2__c"),
            "opportunity_id": None,
            "raw_data": q,
            "fetched_at": now,
            "tenant_id": self.tenant_id,
            "created_at": now,
            "updated_at": now,
        }

    async def resolve_references(self, rows):
        opportunity_ids = await self.lookup_ids(OPPORTUNITIES_TABLE, [r["opportunity_id_raw"] for r in rows])
        for row in rows:
            row["opportunity_id"] = opportunity_ids.get(row["opportunity_id_raw"])
        return rows

    async def upsert_one(self, row: dict) -> None:
        """Update the existing row (keeping its id) or insert a new one."""
        existing = await run_db(
            lambda: self.supabase.table(self.table)
            .select("id")
            .eq("salesforce_id", row["salesforce_id"])
            .eq("tenant_id", self.tenant_id)
            .limit(1)
            .execute()
        )
        if existing.data:
            update = {k: v for k, v in row.items() if k != "created_at"}
            update["updated_at"] = now_iso()
            await run_db(
                lambda: self.supabase.table(self.table)
                .update(update)
                .eq("salesforce_id", row["salesforce_id"])
                .eq("tenant_id", self.tenant_id)
                .execute()
            )
        else:
            await run_db(lambda: self.supabase.table(self.table).insert([row]).execute())


class OrderIngestion(SalesforceIngestionJob):
    name = "orders"
    table = ORDERS_TABLE
    batch_size = 10
    error_code = "SALESFORCE_ORDER_DOWNLOAD_ERROR"

    async def fetch_records(self, start, end, limit=None):
        return await self.client.soql_query(build_soql("Order", ORDER_FIELDS, start, end, limit))

    def transform(self, o: dict) -> dict:
        now = now_iso()
        return {
            "salesforce_id": o.get("Id"),
            "name": o.get("OrderNumber"),
            "status": o.get("Status"),
            "effective_date": o.get("EffectiveDate"),
            "total_amount": o.get("TotalAmount"),
            "order_type": o.get("Type"),
            "account_id": o.get("AccountId"),
            "billing_frequency": o.get("Billing_Frequency__c"),
            "order_number": o.get("OrderNumber"),
            "shipping_country_code": o.get("Shipping_Address_Country_Code__c"),
            "currency_iso_code": o.get("CurrencyIsoCode"),
            "created_date": o.get("CreatedDate"),
            "opportunity_id_raw": o.get("OpportunityId"),
            "opportunity_id": None,
            "quote_id_raw": o.get("SBQQ__Quote__c"),
            "quote_id": None,
            "raw_data": o,
            "fetched_at": now,
            "tenant_id": self.tenant_id,
            "created_at": now,
            "updated_at": now,
        }

    async def resolve_references(self, rows):
        opportunity_ids = await self.lookup_ids(OPPORTUNITIES_TABLE, [r["opportunity_id_raw"] for r in rows])
        quote_ids = await self.lookup_ids(QUOTES_TABLE, [r["quote_id_raw"] for r in rows])
        for row in rows:
            row["opportunity_id"] = opportunity_ids.get(row["opportunity_id_raw"])
            row["quote_id"] = quote_ids.get(row["quote_id_raw"])
        return rows
