"""Lead Funnel Analytics for Bitrix24 - Main Server"""
from fastapi import FastAPI, APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from functools import lru_cache
from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from config import get_settings
from bitrix_crm import BitrixAPIError, BitrixCRMClient, create_bitrix_client
from source_cache import SourceCache
from funnel.periods import InvalidPeriodError, resolve_period
from funnel.reports import build_employees_report, build_sales_report, build_sources_report
from funnel.stages import FunnelConfig, load_funnel_config

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Lead Funnel Analytics")
api_router = APIRouter(prefix="/api")


# ============ Pydantic Models ============

class ErrorResponse(BaseModel):
    success: bool = False
    error: str

class SourceItem(BaseModel):
    code: str
    name: str

class SourcesResponse(BaseModel):
    success: bool = True
    data: List[SourceItem]
    total: int

class SyncSourcesResponse(BaseModel):
    success: bool = True
    message: str
    synced: int
    updated: int
    total: int

class LeadStagesResponse(BaseModel):
    success: bool = True
    data: Dict[str, str]
    total: int

class DealCategoriesResponse(BaseModel):
    success: bool = True
    data: List[Dict[str, Any]]
    total: int


# ============ Dependencies ============

@lru_cache(maxsize=1)
def get_funnel_config() -> FunnelConfig:
    current = get_settings()
    return load_funnel_config(
        current.funnel_config_path,
        contract_category_id=current.contract_category_id,
        contract_won_stage_id=current.contract_won_stage_id,
    )


@lru_cache(maxsize=1)
def get_bitrix_client() -> BitrixCRMClient:
    return create_bitrix_client(get_settings())


@lru_cache(maxsize=1)
def get_source_cache() -> SourceCache:
    return SourceCache()


def parse_source_ids(source_id: Optional[str]) -> Optional[List[str]]:
    """`sourceId` accepts a single code or a comma-separated list."""
    if not source_id:
        return None
    ids = [s.strip() for s in source_id.split(",") if s.strip()]
    return ids or None


# ============ Error Handlers ============

@app.exception_handler(BitrixAPIError)
async def bitrix_error_handler(request: Request, exc: BitrixAPIError):
    logger.error(f"Bitrix24 request failed on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content=ErrorResponse(error=str(exc)).model_dump())


@app.exception_handler(InvalidPeriodError)
async def invalid_period_handler(request: Request, exc: InvalidPeriodError):
    return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())


# ============ Analytics Endpoints ============

@api_router.get("/analytics/sources")
async def sources_analytics(
    period: str = "week",
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    source_id: Optional[str] = Query(None, alias="sourceId"),
    client: BitrixCRMClient = Depends(get_bitrix_client),
    source_cache: SourceCache = Depends(get_source_cache),
    config: FunnelConfig = Depends(get_funnel_config),
):
    """Funnel conversion by lead source"""
    date_range = resolve_period(period, start_date, end_date)
    return await build_sources_report(client, source_cache, config, date_range, parse_source_ids(source_id))


@api_router.get("/analytics/employees")
async def employees_analytics(
    period: str = "week",
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    source_id: Optional[str] = Query(None, alias="sourceId"),
    employee_id: Optional[str] = Query(None, alias="employeeId"),
    client: BitrixCRMClient = Depends(get_bitrix_client),
    source_cache: SourceCache = Depends(get_source_cache),
    config: FunnelConfig = Depends(get_funnel_config),
):
    """Funnel conversion by responsible employee"""
    date_range = resolve_period(period, start_date, end_date)
    return await build_employees_report(
        client, source_cache, config, date_range, parse_source_ids(source_id), employee_id
    )


@api_router.get("/analytics/sales")
async def sales_analytics(
    period: str = "week",
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    client: BitrixCRMClient = Depends(get_bitrix_client),
    source_cache: SourceCache = Depends(get_source_cache),
    config: FunnelConfig = Depends(get_funnel_config),
):
    """Closed sales attributed to lead sources"""
    date_range = resolve_period(period, start_date, end_date)
    return await build_sales_report(client, source_cache, config, date_range)


# ============ Dashboard Directory Endpoints ============

@api_router.get("/dashboard/sources", response_model=SourcesResponse)
async def list_sources(
    client: BitrixCRMClient = Depends(get_bitrix_client),
    source_cache: SourceCache = Depends(get_source_cache),
):
    """Lead sources from the local cache"""
    await source_cache.ensure_loaded(client)
    sources = source_cache.snapshot()
    return SourcesResponse(data=sources, total=len(sources))


@api_router.post("/dashboard/sync-sources", response_model=SyncSourcesResponse)
async def sync_sources(
    client: BitrixCRMClient = Depends(get_bitrix_client),
    source_cache: SourceCache = Depends(get_source_cache),
):
    """Reload lead sources from Bitrix24"""
    result = await source_cache.sync(client)
    return SyncSourcesResponse(
        message=f"Synced {result['total']} sources",
        **result,
    )


@api_router.get("/dashboard/lead-stages", response_model=LeadStagesResponse)
async def lead_stages(config: FunnelConfig = Depends(get_funnel_config)):
    """Lead status codes and their funnel stage labels"""
    names = config.status_names()
    return LeadStagesResponse(data=names, total=len(names))


@api_router.get("/dashboard/deal-categories", response_model=DealCategoriesResponse)
async def deal_categories(client: BitrixCRMClient = Depends(get_bitrix_client)):
    """Deal funnels configured on the portal"""
    categories = await client.fetch_deal_categories()
    return DealCategoriesResponse(data=categories, total=len(categories))


# ============ Health Check ============

@api_router.get("/")
async def root():
    return {"message": "Lead Funnel Analytics API for Bitrix24"}


@api_router.get("/health")
async def health_check(source_cache: SourceCache = Depends(get_source_cache)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sourcesCached": source_cache.is_loaded,
    }


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=list(settings.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


# Warm the source cache on startup
@app.on_event("startup")
async def startup():
    config = get_funnel_config()
    logger.info(
        f"Funnel config: {len(config.status_to_stage)} statuses, "
        f"sales funnel {config.contract_category_id}/{config.contract_won_stage_id}"
    )
    await get_source_cache().ensure_loaded(get_bitrix_client())
