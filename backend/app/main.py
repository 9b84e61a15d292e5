"""Sugar Insights admin API application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from app import config
from app.analytics import (
    ANALYTICS_CACHE_KEY,
    MEDICATION_OVERVIEW_KEY,
    AnalyticsAggregator,
    MedicationOverviewAggregator,
    fallback_snapshot,
    medication_overview_fallback,
)
from app.auth import require_admin
from app.export import (
    EXPORT_FILENAMES,
    health_to_csv,
    load_health_export,
    load_table_export,
    rows_to_csv,
    snapshot_to_csv,
)
from app.listings import (
    BlogListing,
    BlogQuery,
    MedicationsListing,
    MedicationsQuery,
    UsersListing,
    UsersQuery,
    blog_fallback,
    load_dashboard_summary,
    load_user_activity,
    load_user_analytics,
    medications_fallback,
    users_fallback,
)
from app.log_redact import install_log_redaction
from app.models import (
    CacheStatus,
    CacheStatusResponse,
    DashboardSummary,
    ExportDataset,
    HealthDataType,
    MedicationOverview,
    UserActivityPage,
    UserAnalytics,
)
from app.stats_cache import StatsCache
from app.supabase_client import SupabaseClient, SupabaseError, SupabaseNotConfiguredError

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
install_log_redaction()
logger = logging.getLogger("sugar.api")

# PostgREST / Postgres error codes with a meaningful HTTP mapping.
SUPABASE_ERROR_STATUS: dict[str, int] = {
    "PGRST116": status.HTTP_404_NOT_FOUND,
    "23505": status.HTTP_409_CONFLICT,
    "23503": status.HTTP_400_BAD_REQUEST,
}


def _log_startup_env_warnings() -> None:
    if not config.ADMIN_TOKEN:
        logger.warning("ADMIN_TOKEN is not set; admin endpoints are disabled.")
    if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
        logger.warning("Supabase is not configured; endpoints will serve fallback data.")


def _create_supabase_client() -> Optional[SupabaseClient]:
    try:
        return SupabaseClient.from_config()
    except SupabaseNotConfiguredError:
        return None


def build_caches(client: Optional[SupabaseClient]) -> dict[str, StatsCache]:
    common = {
        "refresh_timeout_seconds": config.BACKGROUND_REFRESH_TIMEOUT_SECONDS,
        "sync_timeout_seconds": config.SYNC_REFRESH_TIMEOUT_SECONDS,
        # A missing Supabase configuration is reported once at startup.
        "expected_errors": (SupabaseNotConfiguredError,),
    }
    listing = {
        **common,
        "freshness_seconds": config.LISTING_FRESHNESS_SECONDS,
        "evict_after_seconds": config.LISTING_EVICT_AFTER_SECONDS,
    }
    return {
        "analytics": StatsCache(
            "analytics",
            AnalyticsAggregator(client),
            fallback_snapshot,
            freshness_seconds=config.ANALYTICS_FRESHNESS_SECONDS,
            **common,
        ),
        "users": StatsCache("users", UsersListing(client), users_fallback, **listing),
        "blog": StatsCache("blog", BlogListing(client), blog_fallback, **listing),
        "medications": StatsCache("medications", MedicationsListing(client), medications_fallback, **listing),
        "medication_overview": StatsCache(
            "medication_overview",
            MedicationOverviewAggregator(client),
            medication_overview_fallback,
            freshness_seconds=config.ANALYTICS_FRESHNESS_SECONDS,
            **common,
        ),
    }


@asynccontextmanager
async def _lifespan(app: FastAPI):
    _log_startup_env_warnings()
    client = _create_supabase_client()
    caches = build_caches(client)
    app.state.supabase = client
    app.state.caches = caches
    if config.ANALYTICS_WARMUP_ON_STARTUP and client is not None:
        # Seeds the fallback and starts the first aggregation in the background.
        caches["analytics"].get(ANALYTICS_CACHE_KEY)
        logger.info("Analytics warm-up scheduled")
    try:
        yield
    finally:
        for cache in caches.values():
            await cache.aclose()
        if client is not None:
            await client.aclose()


# --- App ---
app = FastAPI(
    title="Sugar Insights Admin API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=_lifespan,
)

if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )


@app.exception_handler(SupabaseError)
async def _supabase_error_handler(request: Request, exc: SupabaseError) -> JSONResponse:
    if isinstance(exc, SupabaseNotConfiguredError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = SUPABASE_ERROR_STATUS.get(exc.code or "", status.HTTP_502_BAD_GATEWAY)
    logger.warning(
        "Supabase error on %s status=%s code=%s: %s",
        request.url.path,
        exc.status_code,
        exc.code,
        exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "details": exc.details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
        },
    )


def get_caches(request: Request) -> dict[str, StatsCache]:
    return request.app.state.caches


def get_supabase(request: Request) -> SupabaseClient:
    client = request.app.state.supabase
    if client is None:
        raise SupabaseNotConfiguredError()
    return client


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/api/analytics")
async def get_analytics(
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    return caches["analytics"].get(ANALYTICS_CACHE_KEY)


@app.get("/api/export/analytics")
async def export_analytics(
    export_format: Literal["json", "csv"] = Query(default="json", alias="format"),
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    snapshot = caches["analytics"].get(ANALYTICS_CACHE_KEY)
    if export_format == "csv":
        return _csv_response(snapshot_to_csv(snapshot), "analytics_summary_export.csv")
    return {
        **snapshot,
        "export_date": datetime.now(timezone.utc),
        "export_metadata": {
            "generated_by": app.title,
            "version": app.version,
            "data_source": "Supabase",
        },
    }


@app.get("/api/export/health")
async def export_health(
    export_format: Literal["json", "csv"] = Query(default="json", alias="format"),
    data_type: HealthDataType = Query(default=HealthDataType.ALL, alias="type"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    _: None = Depends(require_admin),
    client: SupabaseClient = Depends(get_supabase),
):
    data = await load_health_export(client, data_type, config.EXPORT_ROW_LIMIT, date_from, date_to)
    if export_format == "csv":
        return _csv_response(health_to_csv(data), f"health_data_{data_type.value}_export.csv")
    return data


@app.get("/api/export/{dataset}")
async def export_dataset(
    dataset: ExportDataset,
    export_format: Literal["json", "csv"] = Query(default="json", alias="format"),
    _: None = Depends(require_admin),
    client: SupabaseClient = Depends(get_supabase),
):
    rows = await load_table_export(client, dataset, config.EXPORT_ROW_LIMIT)
    logger.info("Exported %s rows=%d format=%s", dataset.value, len(rows), export_format)
    if export_format == "csv":
        return _csv_response(rows_to_csv(rows), EXPORT_FILENAMES[dataset])
    return rows


@app.get("/api/users")
async def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    search: str = "",
    status_filter: str = Query(default="", alias="status"),
    diabetes_type: str = "",
    onboarding_completed: Optional[bool] = None,
    sort_by: str = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    query = UsersQuery(
        page=page,
        limit=min(limit, config.MAX_PAGE_SIZE),
        search=search.strip(),
        status=status_filter,
        diabetes_type=diabetes_type,
        onboarding_completed=onboarding_completed,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await caches["users"].fetch(query.cache_key())


@app.get("/api/users/{user_id}/analytics", response_model=UserAnalytics)
async def get_user_analytics(
    user_id: str,
    _: None = Depends(require_admin),
    client: SupabaseClient = Depends(get_supabase),
):
    return await load_user_analytics(client, user_id)


@app.get("/api/users/{user_id}/activity", response_model=UserActivityPage)
async def get_user_activity(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    _: None = Depends(require_admin),
    client: SupabaseClient = Depends(get_supabase),
):
    return await load_user_activity(client, user_id, page, min(limit, config.MAX_PAGE_SIZE))


@app.get("/api/blog")
async def list_blog_content(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    query = BlogQuery(page=page, limit=min(limit, config.MAX_PAGE_SIZE))
    return await caches["blog"].fetch(query.cache_key())


@app.get("/api/medications")
async def list_medications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    user_id: str = "",
    status_filter: str = Query(default="", alias="status"),
    search: str = "",
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    query = MedicationsQuery(
        page=page,
        limit=min(limit, config.MAX_PAGE_SIZE),
        user_id=user_id,
        status=status_filter,
        search=search.strip(),
    )
    return await caches["medications"].fetch(query.cache_key())


@app.get("/api/medications/overview", response_model=MedicationOverview)
async def get_medication_overview(
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    return await caches["medication_overview"].fetch(MEDICATION_OVERVIEW_KEY)


@app.get("/api/dashboard", response_model=DashboardSummary)
async def get_dashboard(
    _: None = Depends(require_admin),
    client: SupabaseClient = Depends(get_supabase),
):
    return await load_dashboard_summary(client)


@app.get("/api/admin/cache", response_model=CacheStatusResponse)
async def get_cache_status(
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    return CacheStatusResponse(caches=[CacheStatus.model_validate(cache.stats()) for cache in caches.values()])


@app.post("/api/admin/cache/refresh")
async def refresh_analytics(
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    refreshed = await caches["analytics"].refresh(ANALYTICS_CACHE_KEY)
    if not refreshed:
        logger.warning("Manual analytics refresh failed; keeping previous snapshot")
    return {"status": "refreshed" if refreshed else "failed", "refreshed": refreshed}


@app.post("/api/admin/cache/clear")
async def clear_caches(
    caches: dict[str, StatsCache] = Depends(get_caches),
    _: None = Depends(require_admin),
):
    for cache in caches.values():
        cache.clear()
    logger.info("Cleared caches: %s", ", ".join(caches))
    return {"status": "cleared", "caches": list(caches)}


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
