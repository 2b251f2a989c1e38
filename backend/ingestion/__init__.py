"""
Source system → raw table ingestion jobs.
"""

from .base import (
    DownloadRequest,
    IngestionJob,
    IngestionResult,
    ProgressEvent,
    dedupe_by_source_id,
    format_sse,
    resolve_date_range,
    stream_ingestion,
)
from .salesforce_jobs import OpportunityIngestion, QuoteIngestion, OrderIngestion
from .netsuite_jobs import InvoiceIngestion, CreditMemoIngestion, PaymentIngestion

__all__ = [
    "DownloadRequest",
    "IngestionJob",
    "IngestionResult",
    "ProgressEvent",
    "dedupe_by_source_id",
    "format_sse",
    "resolve_date_range",
    "stream_ingestion",
    "OpportunityIngestion",
    "QuoteIngestion",
    "OrderIngestion",
    "InvoiceIngestion",
    "CreditMemoIngestion",
    "PaymentIngestion",
]
