"""Pydantic request and response schemas for the Focal FinOps API.

All API inputs and outputs are typed Pydantic models. Service-layer
dataclasses are converted with ``from_attributes``.
"""

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from focal_finops.storage.controller import RetentionSettings, StorageMode


# ---------------------------------------------------------------------------
# Aggregation cache
# ---------------------------------------------------------------------------


class CacheStatsResponse(BaseModel):
    """Aggregation cache diagnostics."""

    model_config = ConfigDict(from_attributes=True)

    total_entries: int
    total_size: int
    entries_by_type: dict[str, int]
    oldest_entry: datetime | None
    newest_entry: datetime | None


class DeletedCountResponse(BaseModel):
    deleted: int


# ---------------------------------------------------------------------------
# Cached queries
# ---------------------------------------------------------------------------


class CachedQueryResponse(BaseModel):
    """State of one cached query after a load."""

    cache_key: str
    data: Any
    status: str
    is_loading: bool
    is_fetching: bool
    is_from_cache: bool
    error: str | None = None
    updated_at: datetime | None = None


class RefetchRequest(BaseModel):
    """Force a fresh fetch for one of the cost dashboards."""

    query: Literal["daily", "services", "kpis"]
    start_date: date | None = None
    end_date: date | None = None


# ---------------------------------------------------------------------------
# Anomalies
# ---------------------------------------------------------------------------


class AnomalyImpactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cost_impact: float
    percentage_change: float


class AnomalyResponse(BaseModel):
    """A single detected cost anomaly."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    resource_id: str
    service_name: str
    timestamp: datetime
    anomaly_type: str
    severity: str
    score: float
    impact: AnomalyImpactResponse
    expected_cost: float
    actual_cost: float
    detection_method: str
    method_scores: dict[str, float]
    description: str
    recommendations: list[str]


class AnomalyListResponse(BaseModel):
    anomalies: list[AnomalyResponse]
    total: int
    is_detecting: bool
    last_detection: datetime | None
    error: str | None = None


class ServiceImpactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    service: str
    count: int
    impact: float


class AnomalySummaryResponse(BaseModel):
    """Tier counts, total signed impact and top services."""

    model_config = ConfigDict(from_attributes=True)

    total: int
    critical: int
    high: int
    medium: int
    low: int
    total_impact: float
    top_services: list[ServiceImpactResponse]
    recent_high_severity: list[AnomalyResponse] = Field(default_factory=list)


class DetectionRunResponse(BaseModel):
    started: bool
    anomalies: int
    last_detection: datetime | None
    error: str | None = None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageBreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    billing_data: float
    indexes: float
    cache: float
    other: float


class StorageInfoResponse(BaseModel):
    """Quota, usage and categorised breakdown of the data footprint."""

    model_config = ConfigDict(from_attributes=True)

    quota: int
    usage: int
    usage_percent: float
    breakdown: StorageBreakdownResponse
    breakdown_percent: StorageBreakdownResponse
    show_warning: bool = False


class StorageSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mode: StorageMode
    retention: RetentionSettings
    show_warnings: bool
    auto_cleanup_threshold: float
    retention_options: list[RetentionSettings] = Field(default_factory=list)


class StorageSettingsUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their current value."""

    mode: StorageMode | None = None
    retention: RetentionSettings | None = None
    show_warnings: bool | None = None
    auto_cleanup_threshold: float | None = Field(default=None, ge=0, le=100)


class RetentionCleanupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deleted_files: int
    freed_bytes: int
    freed: str


class PurgeStepErrorResponse(BaseModel):
    step: str
    message: str


class PurgeResponse(BaseModel):
    succeeded: bool
    steps_completed: list[str]
    errors: list[PurgeStepErrorResponse]


class HealthResponse(BaseModel):
    status: str
    service: str
