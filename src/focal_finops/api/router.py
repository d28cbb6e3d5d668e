"""FastAPI router for the Focal FinOps API.

All routes are thin: they resolve the shared services from the container,
call them, and return Pydantic response models. No business logic belongs
here.

Endpoints:
  GET    /api/v1/cache/stats                  Aggregation cache diagnostics
  POST   /api/v1/cache/cleanup                Sweep expired cache entries
  DELETE /api/v1/cache                        Clear the aggregation cache
  DELETE /api/v1/cache/kinds/{kind}           Invalidate one cache kind
  GET    /api/v1/costs/daily                  Daily cost trend (cached)
  GET    /api/v1/costs/services               Service breakdown (cached)
  GET    /api/v1/costs/kpis                   Headline KPIs (cached)
  POST   /api/v1/costs/refetch                Bypass the cache for one dashboard
  GET    /api/v1/anomalies                    Current anomalies, filterable
  GET    /api/v1/anomalies/summary            Summary of the current anomaly set
  POST   /api/v1/anomalies/detect             Run detection now
  GET    /api/v1/storage                      Quota, usage and breakdown
  GET    /api/v1/storage/settings             Storage settings and retention options
  PATCH  /api/v1/storage/settings             Update storage settings
  POST   /api/v1/storage/retention-cleanup    Delete files older than the retention
  POST   /api/v1/storage/purge                Delete all local data
  GET    /api/v1/health                       Liveness
"""

from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request

from focal_finops.adapters.focus_queries import daily_costs_sql, kpi_sql, service_breakdown_sql
from focal_finops.anomaly.session import AnomalyFilters, AnomalySession
from focal_finops.api.schemas import (
    AnomalyListResponse,
    AnomalyResponse,
    AnomalySummaryResponse,
    CachedQueryResponse,
    CacheStatsResponse,
    DeletedCountResponse,
    DetectionRunResponse,
    HealthResponse,
    PurgeResponse,
    PurgeStepErrorResponse,
    RefetchRequest,
    RetentionCleanupResponse,
    ServiceImpactResponse,
    StorageBreakdownResponse,
    StorageInfoResponse,
    StorageSettingsResponse,
    StorageSettingsUpdateRequest,
)
from focal_finops.cache.aggregation_cache import KPI_CACHE_KEY, make_cache_key
from focal_finops.cache.cached_query import (
    CachedQuery,
    CachedQueryOptions,
    daily_costs_options,
    kpi_options,
    service_breakdown_options,
)
from focal_finops.container import ServiceContainer
from focal_finops.storage.controller import format_bytes

router = APIRouter()

_DEFAULT_WINDOW_DAYS = 30


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_container(request: Request) -> ServiceContainer:
    """Return the ServiceContainer created by the app lifespan."""
    return request.app.state.container


def get_anomaly_session(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> AnomalySession:
    return container.anomaly_session


def _date_range(start_date: date | None, end_date: date | None) -> tuple[date, date]:
    end = end_date or datetime.now(tz=timezone.utc).date() + timedelta(days=1)
    start = start_date or end - timedelta(days=_DEFAULT_WINDOW_DAYS)
    return start, end


def _daily_options(container: ServiceContainer, start: date, end: date) -> CachedQueryOptions:
    sql = daily_costs_sql(container.settings.focus_table_name, start, end)

    async def fetch() -> list[dict[str, Any]]:
        return await container.query_engine.query(sql)

    key = make_cache_key("daily_costs", {"start": start.isoformat(), "end": end.isoformat()})
    return daily_costs_options(key, fetch)


def _services_options(container: ServiceContainer, start: date, end: date) -> CachedQueryOptions:
    sql = service_breakdown_sql(container.settings.focus_table_name, start, end)

    async def fetch() -> list[dict[str, Any]]:
        return await container.query_engine.query(sql)

    key = make_cache_key("service_breakdown", {"start": start.isoformat(), "end": end.isoformat()})
    return service_breakdown_options(key, fetch)


def _kpi_options(container: ServiceContainer) -> CachedQueryOptions:
    sql = kpi_sql(container.settings.focus_table_name)

    async def fetch() -> dict[str, Any]:
        rows = await container.query_engine.query(sql)
        return rows[0] if rows else {}

    return kpi_options(KPI_CACHE_KEY, fetch)


def _query_response(handle: CachedQuery) -> CachedQueryResponse:
    state = handle.snapshot()
    return CachedQueryResponse(
        cache_key=handle.options.cache_key,
        data=state.data,
        status=state.status.value,
        is_loading=state.is_loading,
        is_fetching=state.is_fetching,
        is_from_cache=state.is_from_cache,
        error=str(state.error) if state.error else None,
        updated_at=state.updated_at,
    )


# ---------------------------------------------------------------------------
# Aggregation cache endpoints
# ---------------------------------------------------------------------------


@router.get("/cache/stats", response_model=CacheStatsResponse, tags=["cache"], summary="Cache statistics")
async def cache_stats(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> CacheStatsResponse:
    stats = await container.cache.stats()
    return CacheStatsResponse.model_validate(stats)


@router.post("/cache/cleanup", response_model=DeletedCountResponse, tags=["cache"], summary="Sweep expired entries")
async def cache_cleanup(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> DeletedCountResponse:
    return DeletedCountResponse(deleted=await container.cache.cleanup())


@router.delete("/cache", response_model=DeletedCountResponse, tags=["cache"], summary="Clear the cache")
async def cache_clear(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> DeletedCountResponse:
    return DeletedCountResponse(deleted=await container.cache.invalidate_all())


@router.delete(
    "/cache/kinds/{kind}",
    response_model=DeletedCountResponse,
    tags=["cache"],
    summary="Invalidate one cache kind",
)
async def cache_invalidate_kind(
    kind: str,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> DeletedCountResponse:
    return DeletedCountResponse(deleted=await container.cache.invalidate_kind(kind))


# ---------------------------------------------------------------------------
# Cost endpoints (cache-first)
# ---------------------------------------------------------------------------


@router.get("/costs/daily", response_model=CachedQueryResponse, tags=["costs"], summary="Daily cost trend")
async def daily_costs(
    container: Annotated[ServiceContainer, Depends(get_container)],
    start_date: Annotated[date | None, Query(description="Inclusive start date")] = None,
    end_date: Annotated[date | None, Query(description="Exclusive end date")] = None,
) -> CachedQueryResponse:
    """Daily totals, served from cache while fresh and revalidated in the background when stale."""
    start, end = _date_range(start_date, end_date)
    handle = container.orchestrator.handle(_daily_options(container, start, end))
    await handle.load()
    return _query_response(handle)


@router.get("/costs/services", response_model=CachedQueryResponse, tags=["costs"], summary="Service breakdown")
async def service_breakdown(
    container: Annotated[ServiceContainer, Depends(get_container)],
    start_date: Annotated[date | None, Query()] = None,
    end_date: Annotated[date | None, Query()] = None,
) -> CachedQueryResponse:
    start, end = _date_range(start_date, end_date)
    handle = container.orchestrator.handle(_services_options(container, start, end))
    await handle.load()
    return _query_response(handle)


@router.get("/costs/kpis", response_model=CachedQueryResponse, tags=["costs"], summary="Headline KPIs")
async def kpis(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> CachedQueryResponse:
    handle = container.orchestrator.handle(_kpi_options(container))
    await handle.load()
    return _query_response(handle)


@router.post("/costs/refetch", response_model=CachedQueryResponse, tags=["costs"], summary="Refetch a dashboard")
async def refetch_costs(
    request: RefetchRequest,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> CachedQueryResponse:
    """Fetch from the query engine regardless of the cached entry and write it through."""
    start, end = _date_range(request.start_date, request.end_date)
    if request.query == "daily":
        options = _daily_options(container, start, end)
    elif request.query == "services":
        options = _services_options(container, start, end)
    else:
        options = _kpi_options(container)
    handle = container.orchestrator.handle(options)
    await handle.refetch()
    return _query_response(handle)


# ---------------------------------------------------------------------------
# Anomaly endpoints
# ---------------------------------------------------------------------------


@router.get("/anomalies", response_model=AnomalyListResponse, tags=["anomalies"], summary="List anomalies")
async def list_anomalies(
    session: Annotated[AnomalySession, Depends(get_anomaly_session)],
    severity: Annotated[str, Query(description="low | medium | high | critical | all")] = "all",
    service: Annotated[str | None, Query()] = None,
    resource_id: Annotated[str | None, Query()] = None,
    date_from: Annotated[datetime | None, Query()] = None,
    date_to: Annotated[datetime | None, Query()] = None,
    min_impact: Annotated[float | None, Query(description="Minimum signed cost impact")] = None,
) -> AnomalyListResponse:
    filters = AnomalyFilters(
        severity=severity,
        service=service,
        resource_id=resource_id,
        date_from=date_from,
        date_to=date_to,
        min_impact=min_impact,
    )
    anomalies = session.filter(filters)
    return AnomalyListResponse(
        anomalies=[AnomalyResponse.model_validate(a) for a in anomalies],
        total=len(anomalies),
        is_detecting=session.is_detecting,
        last_detection=session.last_detection,
        error=str(session.error) if session.error else None,
    )


@router.get(
    "/anomalies/summary",
    response_model=AnomalySummaryResponse,
    tags=["anomalies"],
    summary="Anomaly summary",
)
async def anomaly_summary(
    session: Annotated[AnomalySession, Depends(get_anomaly_session)],
    limit: Annotated[int, Query(ge=1, le=50)] = 5,
) -> AnomalySummaryResponse:
    summary = session.summary
    return AnomalySummaryResponse(
        total=summary.total,
        critical=summary.critical,
        high=summary.high,
        medium=summary.medium,
        low=summary.low,
        total_impact=summary.total_impact,
        top_services=[ServiceImpactResponse.model_validate(s) for s in summary.top_services],
        recent_high_severity=[AnomalyResponse.model_validate(a) for a in session.recent_high_severity(limit)],
    )


@router.post(
    "/anomalies/detect",
    response_model=DetectionRunResponse,
    tags=["anomalies"],
    summary="Run anomaly detection",
)
async def run_detection(
    session: Annotated[AnomalySession, Depends(get_anomaly_session)],
) -> DetectionRunResponse:
    """Run detection now. A request arriving while a run is in progress returns started=false."""
    started = await session.run_detection()
    return DetectionRunResponse(
        started=started,
        anomalies=len(session.anomalies),
        last_detection=session.last_detection,
        error=str(session.error) if session.error else None,
    )


# ---------------------------------------------------------------------------
# Storage endpoints
# ---------------------------------------------------------------------------


def _settings_response(container: ServiceContainer) -> StorageSettingsResponse:
    current = container.storage.get_settings()
    return StorageSettingsResponse(
        mode=current.mode,
        retention=current.retention,
        show_warnings=current.show_warnings,
        auto_cleanup_threshold=current.auto_cleanup_threshold,
        retention_options=list(container.storage.get_retention_options()),
    )


@router.get("/storage", response_model=StorageInfoResponse, tags=["storage"], summary="Storage usage")
async def storage_info(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> StorageInfoResponse:
    info = await container.storage.get_storage_info()
    current = container.storage.get_settings()
    return StorageInfoResponse(
        quota=info.quota,
        usage=info.usage,
        usage_percent=info.usage_percent,
        breakdown=StorageBreakdownResponse.model_validate(info.breakdown),
        breakdown_percent=StorageBreakdownResponse.model_validate(info.breakdown_percent),
        show_warning=current.show_warnings and container.storage.should_auto_cleanup(info.usage_percent),
    )


@router.get("/storage/settings", response_model=StorageSettingsResponse, tags=["storage"], summary="Storage settings")
async def get_storage_settings(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> StorageSettingsResponse:
    return _settings_response(container)


@router.patch(
    "/storage/settings",
    response_model=StorageSettingsResponse,
    tags=["storage"],
    summary="Update storage settings",
)
async def update_storage_settings(
    request: StorageSettingsUpdateRequest,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> StorageSettingsResponse:
    container.storage.update_settings(**request.model_dump(exclude_none=True))
    return _settings_response(container)


@router.post(
    "/storage/retention-cleanup",
    response_model=RetentionCleanupResponse,
    tags=["storage"],
    summary="Run retention cleanup",
)
async def retention_cleanup(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> RetentionCleanupResponse:
    result = await container.storage.run_retention_cleanup()
    return RetentionCleanupResponse(
        deleted_files=result.deleted_files,
        freed_bytes=result.freed_bytes,
        freed=format_bytes(result.freed_bytes),
    )


@router.post("/storage/purge", response_model=PurgeResponse, tags=["storage"], summary="Purge all local data")
async def purge(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> PurgeResponse:
    """Delete every file, cache entry and settings document owned by this service."""
    report = await container.storage.purge_all_data()
    return PurgeResponse(
        succeeded=report.succeeded,
        steps_completed=report.steps_completed,
        errors=[PurgeStepErrorResponse(step=e.step, message=str(e)) for e in report.errors],
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, tags=["health"], summary="Liveness")
async def health(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> HealthResponse:
    return HealthResponse(status="ok", service=container.settings.service_name)
