"""Beacon L2C Analytics - API Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Literal
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from auth_service import verify_token, TokenData
from cache_service import TTLCache, CACHE_TTL, build_cache_key
from currency_service import CurrencyService, CurrencyError
from db import get_supabase
from entity_listing import ENTITY_VIEWS, ListingQuery, list_entities, split_csv
from flow import FlowDataService, FlowFilters
from ingestion import (
    DownloadRequest,
    OpportunityIngestion, QuoteIngestion, OrderIngestion,
    InvoiceIngestion, CreditMemoIngestion, PaymentIngestion,
    stream_ingestion,
)
from metrics.auto_renewal import get_auto_renewal_rate
from metrics.catalog_metrics import get_pricebook_metrics, get_product_metrics, get_cost_metrics
from metrics.dashboard import get_dashboard_unified
from netsuite_client import NetSuiteClient
from query_timeout import with_timeout, DEFAULT_QUERY_TIMEOUT, ADMIN_QUERY_TIMEOUT
from rate_limit import RateLimiter
from salesforce_client import SalesforceClient, SalesforceTokenStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Beacon L2C Analytics")
api_router = APIRouter(prefix="/api")

# One instance per concern for the life of the process
metrics_cache = TTLCache(default_ttl=CACHE_TTL["METRICS"])
flow_cache = TTLCache(default_ttl=CACHE_TTL["FLOW_DATA"])
currency_cache = TTLCache(default_ttl=CACHE_TTL["CURRENCY"])

general_limiter = RateLimiter.from_config("general")
metrics_limiter = RateLimiter.from_config("metrics")
download_limiter = RateLimiter.from_config("download")


# ============ Pydantic Models ============

class FlowFilterPayload(BaseModel):
    dateRange: Optional[Dict[str, Optional[str]]] = None
    daysBack: Optional[int] = Field(default=None, ge=1, le=2000)
    customerTier: Optional[str] = None
    geolocation: Optional[str] = None
    productType: Optional[str] = None
    stage: Optional[str] = None
    leadType: Optional[str] = None
    customerType: Optional[str] = None
    dealSize: Optional[Literal["all", "small", "medium", "large", "enterprise"]] = None
    opportunityToQuoteTime: Optional[Literal["all", "fast", "slow"]] = None


class FlowRequest(BaseModel):
    filters: FlowFilterPayload = Field(default_factory=FlowFilterPayload)


class MetricFilters(BaseModel):
    dateRange: Optional[Dict[str, Optional[str]]] = None
    daysBack: Optional[int] = Field(default=None, ge=1, le=2000)
    customerTier: List[str] = Field(default_factory=list)
    customerCountry: List[str] = Field(default_factory=list)
    marketSegment: List[str] = Field(default_factory=list)
    leadSource: List[str] = Field(default_factory=list)
    opportunityType: List[str] = Field(default_factory=list)


class MetricRequest(BaseModel):
    filters: MetricFilters = Field(default_factory=MetricFilters)


class PagedRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    page: int = Field(default=1, ge=1)
    pageSize: int = Field(default=50, ge=1, le=1000)
    sortBy: str = Field(default="name", pattern=r"^[a-z_]+$")
    sortDirection: Literal["asc", "desc"] = "asc"


# ============ Error Handling ============

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(code: str, exc: Exception, status_code: int = 500) -> JSONResponse:
    logger.error(f"{code}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": code, "details": str(exc), "timestamp": _now()},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "details": jsonable_errors(exc), "timestamp": _now()},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]


# ============ Auth Middleware ============

async def get_current_user(authorization: Optional[str] = Header(None)) -> TokenData:
    """Verify JWT token and return current user data"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token_data = verify_token(token)
    if not token_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return token_data


async def require_tenant(current_user: TokenData = Depends(get_current_user)) -> TokenData:
    if not current_user.tenant_id:
        raise HTTPException(status_code=403, detail="No organization associated with this account")
    return current_user


def rate_limited(limiter: RateLimiter):
    """Dependency: authenticated tenant, counted against `limiter`."""
    async def _check(current_user: TokenData = Depends(require_tenant)) -> TokenData:
        result = limiter.check(current_user.tenant_id)
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail="Too many requests",
                headers={"Retry-After": str(max(1, int(result.retry_after)))},
            )
        return current_user
    return _check


# ============ Flow Endpoints ============

def _flow_service(current_user: TokenData) -> FlowDataService:
    return FlowDataService(get_supabase(), tenant_id=current_user.tenant_id)


def _flow_filters(request: FlowRequest) -> FlowFilters:
    return FlowFilters.from_request(request.filters.model_dump(exclude_none=True))


async def _cached_flow(name: str, current_user: TokenData, filters: FlowFilters, loader):
    key = build_cache_key(f"{name}:{current_user.tenant_id}", filters.cache_params())
    return await flow_cache.get_or_load(key, loader)


@api_router.post("/flow/period-comparison")
async def flow_period_comparison(
    request: FlowRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    filters = _flow_filters(request)
    try:
        service = _flow_service(current_user)
        return await _cached_flow("flow:periods", current_user, filters,
                                  lambda: service.get_period_comparison(filters))
    except Exception as e:
        return error_response("FLOW_PERIOD_COMPARISON_ERROR", e)


@api_router.post("/flow/invoice-to-payment")
async def flow_invoice_to_payment(
    request: FlowRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    filters = _flow_filters(request)
    try:
        service = _flow_service(current_user)
        return await _cached_flow("flow:invoice-payment", current_user, filters,
                                  lambda: service.get_invoice_to_payment_data(filters))
    except Exception as e:
        return error_response("INVOICE_TO_PAYMENT_ERROR", e)


@api_router.post("/flow/credit-memo-ratio")
async def flow_credit_memo_ratio(
    request: FlowRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    filters = _flow_filters(request)
    try:
        service = _flow_service(current_user)
        return await _cached_flow("flow:credit-memo", current_user, filters,
                                  lambda: service.get_credit_memo_ratio_data(filters))
    except Exception as e:
        return error_response("CREDIT_MEMO_RATIO_ERROR", e)


@api_router.post("/flow/opportunity-summary")
async def flow_opportunity_summary(
    request: FlowRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    filters = _flow_filters(request)
    try:
        service = _flow_service(current_user)
        return await _cached_flow("flow:opportunity-summary", current_user, filters,
                                  lambda: service.get_opportunity_summary(filters))
    except Exception as e:
        return error_response("OPPORTUNITY_SUMMARY_ERROR", e)


@api_router.post("/flow/refresh-views")
async def flow_refresh_views(current_user: TokenData = Depends(rate_limited(general_limiter))):
    try:
        status = await with_timeout(
            _flow_service(current_user).refresh_materialized_views(),
            ADMIN_QUERY_TIMEOUT,
            label="view refresh",
        )
    except Exception as e:
        return error_response("VIEW_REFRESH_ERROR", e)
    flow_cache.clear()
    return {"success": all(status.values()), "views": status}


# ============ Metric Endpoints ============

@api_router.post("/metrics/dashboard-unified")
async def dashboard_unified(
    request: FlowRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    filters = _flow_filters(request)
    try:
        service = _flow_service(current_user)
        key = build_cache_key(f"dashboard:{current_user.tenant_id}", filters.cache_params())
        return await metrics_cache.get_or_load(key, lambda: get_dashboard_unified(service, filters))
    except Exception as e:
        return error_response("DASHBOARD_UNIFIED_ERROR", e)


@api_router.post("/metrics/auto-renewal-rate")
async def auto_renewal_rate(
    request: MetricRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    payload = request.filters.model_dump(exclude_none=True)
    try:
        key = build_cache_key(f"auto-renewal:{current_user.tenant_id}", payload)
        return await metrics_cache.get_or_load(
            key,
            lambda: get_auto_renewal_rate(get_supabase(), payload, tenant_id=current_user.tenant_id),
        )
    except Exception as e:
        return error_response("AUTO_RENEWAL_RATE_ERROR", e)


@api_router.post("/metrics/pricebook-metrics")
async def pricebook_metrics(
    request: PagedRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    try:
        return await with_timeout(
            get_pricebook_metrics(get_supabase(), request.page, request.pageSize, request.sortBy, request.sortDirection),
            DEFAULT_QUERY_TIMEOUT,
            label="pricebook metrics",
        )
    except Exception as e:
        return error_response("PRICEBOOK_METRICS_ERROR", e)


@api_router.post("/metrics/products-metrics")
async def products_metrics(
    request: PagedRequest,
    current_user: TokenData = Depends(rate_limited(metrics_limiter)),
):
    try:
        key = build_cache_key("products", {"sortBy": request.sortBy, "sortDirection": request.sortDirection})
        return await metrics_cache.get_or_load(
            key,
            lambda: get_product_metrics(get_supabase(), request.sortBy, request.sortDirection),
            ttl=CACHE_TTL["RAW_DATA"],
        )
    except Exception as e:
        return error_response("PRODUCTS_METRICS_ERROR", e)


@api_router.get("/metrics/cost-metrics")
async def cost_metrics(current_user: TokenData = Depends(rate_limited(metrics_limiter))):
    try:
        return await with_timeout(get_cost_metrics(get_supabase()), DEFAULT_QUERY_TIMEOUT, label="cost metrics")
    except Exception as e:
        return error_response("COST_METRICS_ERROR", e)


# ============ Currency ============

@api_router.get("/currency/exchange-rate")
async def exchange_rate(
    from_currency: str,
    to_currency: str = "USD",
    date: Optional[str] = None,
    current_user: TokenData = Depends(rate_limited(general_limiter)),
):
    service = CurrencyService(get_supabase(), cache=currency_cache)
    try:
        rate = await service.get_exchange_rate(
            from_currency.upper(), to_currency.upper(), date, tenant_id=current_user.tenant_id
        )
    except CurrencyError as e:
        return error_response("EXCHANGE_RATE_NOT_FOUND", e, status_code=404)
    return {"from": from_currency.upper(), "to": to_currency.upper(), "date": date, "rate": rate}


@api_router.get("/currency/convert")
async def convert_currency(
    amount: float,
    currency: str,
    date: Optional[str] = None,
    current_user: TokenData = Depends(rate_limited(general_limiter)),
):
    service = CurrencyService(get_supabase(), cache=currency_cache)
    try:
        usd = await service.convert_to_usd(amount, currency.upper(), date, tenant_id=current_user.tenant_id)
    except CurrencyError as e:
        return error_response("EXCHANGE_RATE_NOT_FOUND", e, status_code=404)
    return {"amount": amount, "currency": currency.upper(), "date": date, "amountUsd": usd}


# ============ Entity Listing ============

def listing_query(
    page: int = Query(1, ge=1),
    pageSize: int = Query(50, ge=1, le=1000),
    sortBy: Optional[str] = Query(None, pattern=r"^[a-z_]+$"),
    sortDirection: Literal["asc", "desc"] = "desc",
    dateFrom: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}"),
    dateTo: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}"),
    searchText: Optional[str] = Query(None, max_length=200),
    customerTier: Optional[str] = None,
    region: Optional[str] = None,
    stage: Optional[str] = None,
    leadType: Optional[str] = None,
    productType: Optional[str] = None,
    customerType: Optional[str] = None,
) -> ListingQuery:
    """Query-string listing parameters; dimension filters are comma-separated."""
    dimensions = {
        "customerTier": customerTier, "region": region, "stage": stage,
        "leadType": leadType, "productType": productType, "customerType": customerType,
    }
    return ListingQuery(
        page=page,
        page_size=pageSize,
        sort_by=sortBy,
        sort_direction=sortDirection,
        date_from=dateFrom,
        date_to=dateTo,
        search_text=searchText,
        filters={name: split_csv(value) for name, value in dimensions.items() if value},
    )


async def _list_entity(entity: str, query: ListingQuery, current_user: TokenData):
    try:
        return await with_timeout(
            list_entities(get_supabase(), entity, query, tenant_id=current_user.tenant_id),
            DEFAULT_QUERY_TIMEOUT,
            label=f"{entity} listing",
        )
    except Exception as e:
        return error_response(ENTITY_VIEWS[entity].error_code, e)


@api_router.get("/salesforce/{kind}")
async def salesforce_entities(
    kind: str,
    query: ListingQuery = Depends(listing_query),
    current_user: TokenData = Depends(rate_limited(general_limiter)),
):
    if kind not in ("opportunities", "quotes", "orders"):
        raise HTTPException(status_code=404, detail=f"Unknown Salesforce object: {kind}")
    return await _list_entity(kind, query, current_user)


@api_router.get("/netsuite/credit-memos")
async def netsuite_credit_memos(
    query: ListingQuery = Depends(listing_query),
    current_user: TokenData = Depends(rate_limited(general_limiter)),
):
    return await _list_entity("credit-memos", query, current_user)


# ============ Ingestion Endpoints ============

def _salesforce_client(tenant_id: str) -> SalesforceClient:
    return SalesforceClient(SalesforceTokenStore(get_supabase(), tenant_id))


SALESFORCE_JOBS = {
    "opportunities": OpportunityIngestion,
    "quotes": QuoteIngestion,
    "orders": OrderIngestion,
}

NETSUITE_JOBS = {
    "invoices": InvoiceIngestion,
    "credit-memos": CreditMemoIngestion,
    "payments": PaymentIngestion,
}


async def _run_ingestion(job, request: DownloadRequest):
    if request.stream:
        return StreamingResponse(
            stream_ingestion(job, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
    try:
        result = await job.run(request)
    except Exception as e:
        return error_response(job.error_code, e)
    return result.to_dict()


@api_router.post("/salesforce/download-{kind}")
async def salesforce_download(
    kind: str,
    request: Optional[DownloadRequest] = None,
    current_user: TokenData = Depends(rate_limited(download_limiter)),
):
    job_cls = SALESFORCE_JOBS.get(kind)
    if job_cls is None:
        raise HTTPException(status_code=404, detail=f"Unknown Salesforce object: {kind}")
    try:
        job = job_cls(get_supabase(), current_user.tenant_id, client=_salesforce_client(current_user.tenant_id))
    except Exception as e:
        return error_response(job_cls.error_code, e)
    return await _run_ingestion(job, request or DownloadRequest())


@api_router.post("/netsuite/download-{kind}")
async def netsuite_download(
    kind: str,
    request: Optional[DownloadRequest] = None,
    current_user: TokenData = Depends(rate_limited(download_limiter)),
):
    job_cls = NETSUITE_JOBS.get(kind)
    if job_cls is None:
        raise HTTPException(status_code=404, detail=f"Unknown NetSuite record type: {kind}")
    try:
        job = job_cls(get_supabase(), current_user.tenant_id, client=NetSuiteClient.from_env())
    except Exception as e:
        return error_response(job_cls.error_code, e)
    return await _run_ingestion(job, request or DownloadRequest())


# ============ Health Check ============

@api_router.get("/")
async def root():
    return {"message": "Beacon L2C Analytics API"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    logger.info("Beacon API started")


@app.on_event("shutdown")
async def shutdown():
    evicted = metrics_cache.evict_expired() + flow_cache.evict_expired()
    logger.info(f"Beacon API stopped ({evicted} expired cache entries dropped)")
