"""Shared anomaly session: feeds FOCUS cost data into the detection engine.

One AnomalySession is built per process and handed to every consumer. It
queries daily per-resource costs, runs detection off the event loop, swaps
the result set in atomically, persists it as a snapshot and re-runs on a
timer. Consumers read the current tuple, filter it and summarise it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from focal_finops.adapters.focus_queries import anomaly_input_sql
from focal_finops.anomaly.engine import (
    DETECTION_METHODS,
    SEVERITY_ORDER,
    AnomalyDetectionConfig,
    AnomalyDetectionEngine,
    AnomalyResult,
    TimeSeriesData,
)
from focal_finops.core.errors import QueryExecutionError
from focal_finops.core.interfaces import ILocalSettingsStore, IQueryEngine

logger = structlog.get_logger(__name__)

ANOMALY_CACHE_KEY = "anomalyCache"

AnomalyListener = Callable[[tuple[AnomalyResult, ...]], None]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class AnomalyFilters:
    """View filters over the current anomaly set. None means "any"."""

    severity: str = "all"
    service: str | None = None
    resource_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    min_impact: float | None = None


@dataclass(frozen=True)
class ServiceImpact:
    service: str
    count: int
    impact: float


@dataclass(frozen=True)
class AnomalySummary:
    """Counts per severity tier plus the services with the largest impact."""

    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    total_impact: float = 0.0
    top_services: tuple[ServiceImpact, ...] = ()


@dataclass
class AnomalySnapshot:
    """Persisted detection output with the time it was produced."""

    anomalies: list[AnomalyResult] = field(default_factory=list)
    timestamp: datetime = field(default_factory=_utcnow)


_SNAPSHOT_ADAPTER = TypeAdapter(AnomalySnapshot)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def filter_anomalies(anomalies: Iterable[AnomalyResult], filters: AnomalyFilters) -> list[AnomalyResult]:
    """Return the anomalies matching every set filter, preserving order."""
    matched: list[AnomalyResult] = []
    for anomaly in anomalies:
        if filters.severity != "all" and anomaly.severity != filters.severity:
            continue
        if filters.service and anomaly.service_name != filters.service:
            continue
        if filters.resource_id and anomaly.resource_id != filters.resource_id:
            continue
        if filters.date_from is not None and _as_utc(anomaly.timestamp) < _as_utc(filters.date_from):
            continue
        if filters.date_to is not None and _as_utc(anomaly.timestamp) > _as_utc(filters.date_to):
            continue
        if filters.min_impact is not None and anomaly.impact.cost_impact < filters.min_impact:
            continue
        matched.append(anomaly)
    return matched


def summarize(anomalies: Sequence[AnomalyResult], top_n: int = 5) -> AnomalySummary:
    """Build the tier counts, total signed impact and top services by impact."""
    counts = {severity: 0 for severity in SEVERITY_ORDER}
    services: dict[str, list[float]] = {}
    total_impact = 0.0

    for anomaly in anomalies:
        counts[anomaly.severity] = counts.get(anomaly.severity, 0) + 1
        total_impact += anomaly.impact.cost_impact
        services.setdefault(anomaly.service_name, []).append(anomaly.impact.cost_impact)

    top_services = sorted(
        (ServiceImpact(service=name, count=len(impacts), impact=round(sum(impacts), 4))
         for name, impacts in services.items()),
        key=lambda s: (-s.impact, s.service),
    )[:top_n]

    return AnomalySummary(
        total=len(anomalies),
        critical=counts["critical"],
        high=counts["high"],
        medium=counts["medium"],
        low=counts["low"],
        total_impact=round(total_impact, 4),
        top_services=tuple(top_services),
    )


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        return _as_datetime(datetime.fromisoformat(value))
    raise TypeError(f"Unsupported ChargeDate type: {type(value).__name__}")


def rows_to_series(rows: Iterable[dict[str, Any]]) -> list[TimeSeriesData]:
    """Convert anomaly input rows to TimeSeriesData, skipping malformed rows."""
    series: list[TimeSeriesData] = []
    skipped = 0
    for row in rows:
        try:
            resource_id = str(row["ResourceId"])
            series.append(
                TimeSeriesData(
                    timestamp=_as_datetime(row["ChargeDate"]),
                    value=float(row["DailyCost"]),
                    resource_id=resource_id,
                    metadata={"serviceName": row.get("ServiceName")},
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            skipped += 1
            logger.debug("anomaly_row_skipped", error=str(exc))
    if skipped:
        logger.warning("anomaly_rows_skipped", skipped=skipped)
    return series


class AnomalySession:
    """Process-wide coordinator for anomaly detection results.

    Args:
        query_engine: Source of FOCUS billing rows.
        settings_store: Local settings store holding the persisted snapshot.
        window_days: Detection window and baseline window in days.
        auto_refresh_interval_seconds: Timer period; 0 disables the timer.
        freshness_seconds: Maximum snapshot age adopted by start().
        table_name: FOCUS view queried for cost data.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        query_engine: IQueryEngine,
        settings_store: ILocalSettingsStore,
        window_days: int = 30,
        auto_refresh_interval_seconds: float = 60 * 60,
        freshness_seconds: float = 4 * 60 * 60,
        table_name: str = "focus_unified",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._query_engine = query_engine
        self._settings_store = settings_store
        self._window_days = window_days
        self._interval = auto_refresh_interval_seconds
        self._freshness = freshness_seconds
        self._table_name = table_name
        self._clock = clock
        self._engine = AnomalyDetectionEngine(
            AnomalyDetectionConfig(
                sensitivity=0.3,
                threshold=0.6,
                window_days=window_days,
                methods=DETECTION_METHODS,
                seasonal_adjustment=True,
            )
        )

        self._anomalies: tuple[AnomalyResult, ...] = ()
        self._detecting = False
        self._last_detection: datetime | None = None
        self._error: QueryExecutionError | None = None
        self._filters = AnomalyFilters()
        self._listeners: list[AnomalyListener] = []
        self._timer: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def engine(self) -> AnomalyDetectionEngine:
        return self._engine

    @property
    def anomalies(self) -> tuple[AnomalyResult, ...]:
        return self._anomalies

    @property
    def is_detecting(self) -> bool:
        return self._detecting

    @property
    def last_detection(self) -> datetime | None:
        return self._last_detection

    @property
    def error(self) -> QueryExecutionError | None:
        return self._error

    @property
    def filters(self) -> AnomalyFilters:
        return self._filters

    def set_filters(self, filters: AnomalyFilters) -> None:
        self._filters = filters

    @property
    def filtered_anomalies(self) -> list[AnomalyResult]:
        return filter_anomalies(self._anomalies, self._filters)

    def filter(self, filters: AnomalyFilters) -> list[AnomalyResult]:
        return filter_anomalies(self._anomalies, filters)

    @property
    def summary(self) -> AnomalySummary:
        return summarize(self._anomalies)

    def get_anomalies_for_resource(self, resource_id: str) -> list[AnomalyResult]:
        return [a for a in self._anomalies if a.resource_id == resource_id]

    def get_anomalies_by_severity(self, severity: str) -> list[AnomalyResult]:
        return [a for a in self._anomalies if a.severity == severity]

    def recent_high_severity(self, limit: int = 5) -> list[AnomalyResult]:
        """Most recent critical and high anomalies, newest first."""
        return _recent_high_severity(self._anomalies, limit)

    def subscribe(self, listener: AnomalyListener) -> Callable[[], None]:
        """Register a callback invoked with every new result set.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def run_detection(self) -> bool:
        """Query cost data, detect anomalies and publish the new set.

        A call made while a run is in progress is dropped.

        Returns:
            True when a new result set was published.
        """
        if self._detecting:
            logger.info("anomaly_detection_already_running")
            return False

        self._detecting = True
        self._error = None
        try:
            end = self._clock()
            start = end - timedelta(days=self._window_days)
            rows = await self._query_engine.query(anomaly_input_sql(self._table_name, start, end))
            series = rows_to_series(rows or [])
            detected = await self._engine.detect_async(series)
        except QueryExecutionError as exc:
            return self._fail(exc)
        except Exception as exc:
            return self._fail(QueryExecutionError(f"Detection failed: {exc}"))
        finally:
            self._detecting = False

        self._anomalies = tuple(detected)
        self._last_detection = self._clock()
        self._persist()
        self._notify()

        logger.info(
            "Anomaly detection run completed",
            series_points=len(series),
            anomalies=len(detected),
        )
        return True

    def _fail(self, error: QueryExecutionError) -> bool:
        self._error = error
        logger.error("anomaly_detection_failed", error=str(error))
        return False

    def _persist(self) -> None:
        snapshot = AnomalySnapshot(anomalies=list(self._anomalies), timestamp=self._last_detection or self._clock())
        try:
            self._settings_store.set_item(ANOMALY_CACHE_KEY, _SNAPSHOT_ADAPTER.dump_json(snapshot).decode("utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("anomaly_snapshot_persist_failed", error=str(exc))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._anomalies)
            except Exception:
                logger.exception("anomaly_listener_failed")

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def load_snapshot(self, fresh_only: bool = True) -> AnomalySnapshot | None:
        """Read the persisted snapshot.

        Args:
            fresh_only: Ignore snapshots older than the freshness window.
        """
        raw = self._settings_store.get_item(ANOMALY_CACHE_KEY)
        if raw is None:
            return None
        try:
            snapshot = _SNAPSHOT_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.warning("anomaly_snapshot_invalid", error=str(exc))
            return None

        age = (self._clock() - snapshot.timestamp).total_seconds()
        if fresh_only and age >= self._freshness:
            logger.debug("anomaly_snapshot_stale", age_seconds=age)
            return None
        return snapshot

    def load_summary_from_snapshot(self, limit: int = 5) -> tuple[AnomalySummary, list[AnomalyResult]]:
        """Summary and recent high-severity list from the snapshot, without detecting."""
        snapshot = self.load_snapshot()
        if snapshot is None:
            return AnomalySummary(), []
        return summarize(snapshot.anomalies), _recent_high_severity(snapshot.anomalies, limit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Adopt a fresh snapshot or run detection once, then start the timer."""
        snapshot = self.load_snapshot()
        if snapshot is not None:
            self._anomalies = tuple(snapshot.anomalies)
            self._last_detection = snapshot.timestamp
            logger.info("anomaly_snapshot_loaded", anomalies=len(self._anomalies))
            self._notify()
        else:
            await self.run_detection()

        if self._interval > 0 and self._timer is None:
            self._timer = asyncio.create_task(self._auto_refresh(), name="anomaly-auto-refresh")

    async def _auto_refresh(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_detection()

    async def close(self) -> None:
        """Cancel the auto-refresh timer."""
        if self._timer is None:
            return
        self._timer.cancel()
        try:
            await self._timer
        except asyncio.CancelledError:
            pass
        self._timer = None
        logger.info("anomaly_session_closed")


def _recent_high_severity(anomalies: Iterable[AnomalyResult], limit: int) -> list[AnomalyResult]:
    high = [a for a in anomalies if a.severity in ("critical", "high")]
    high.sort(key=lambda a: (a.timestamp, a.score), reverse=True)
    return high[:limit]


__all__ = [
    "ANOMALY_CACHE_KEY",
    "AnomalyFilters",
    "AnomalySession",
    "AnomalySnapshot",
    "AnomalySummary",
    "ServiceImpact",
    "filter_anomalies",
    "rows_to_series",
    "summarize",
]
