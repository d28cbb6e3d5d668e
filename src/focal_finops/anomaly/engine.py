"""Multi-method cost anomaly detection over per-resource daily cost series.

Each resource's series is scored point by point against a baseline built only
from the points before it inside a trailing window. Three detectors run side
by side:

    statistical      robust z-score: |x - median| / (1.4826 * MAD)
    time-series      deviation from a least-squares trend forecast over the
                     last 7 prior points, scaled by residual spread
    pattern-based    deviation from the mean of prior points on the same
                     weekday (seasonal adjustment)

Raw deviations are normalised to [0, 1] (``min(raw / 5, 1)``) and combined
with max(), so raising any single method's score never lowers the combined
score or the severity tier. The engine is pure and synchronous: identical
input and configuration always give identical output.
"""

from __future__ import annotations

import asyncio
import math
import statistics
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from focal_finops.core.errors import ConfigurationError, DetectionInputError

logger = structlog.get_logger(__name__)

STATISTICAL = "statistical"
TIME_SERIES = "time-series"
PATTERN_BASED = "pattern-based"
DETECTION_METHODS: tuple[str, ...] = (STATISTICAL, TIME_SERIES, PATTERN_BASED)

SEVERITY_ORDER: tuple[str, ...] = ("low", "medium", "high", "critical")
_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(SEVERITY_ORDER)}

# Minimum prior points each detector needs before it scores a point
_MIN_PRIOR_POINTS = {STATISTICAL: 5, TIME_SERIES: 3, PATTERN_BASED: 2}
_TREND_LOOKBACK = 7
_MAD_SCALE = 1.4826
_RAW_SCORE_CEILING = 5.0
_RELATIVE_SPREAD_FLOOR = 0.05
_ABSOLUTE_SPREAD_FLOOR = 0.01


@dataclass(frozen=True)
class TimeSeriesData:
    """One cost observation of one resource.

    Attributes:
        timestamp: Observation time (one point per day for FOCUS input).
        value: Cost amount in source currency units.
        resource_id: Resource the cost belongs to.
        metadata: Free-form attributes; ``serviceName`` names the service.
    """

    timestamp: datetime
    value: float
    resource_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnomalyImpact:
    cost_impact: float
    percentage_change: float


@dataclass(frozen=True)
class AnomalyResult:
    """A detected cost anomaly.

    Attributes:
        id: Stable identifier ``{method}_{resource}_{epoch}``.
        resource_id: Resource the anomaly belongs to.
        service_name: Service of the resource ("Unknown" when absent).
        timestamp: Time of the anomalous observation.
        anomaly_type: ``cost-spike`` or ``cost-drop``.
        severity: ``low``, ``medium``, ``high`` or ``critical``.
        score: Combined normalised score in [0, 1].
        impact: Signed deviation from the expected baseline.
        expected_cost: Baseline of the dominant detector.
        actual_cost: Observed cost.
        detection_method: Detector with the highest normalised score.
        method_scores: Normalised score per detector that could run.
        description: Human-readable summary.
        recommendations: Suggested follow-up actions.
    """

    id: str
    resource_id: str
    service_name: str
    timestamp: datetime
    anomaly_type: str
    severity: str
    score: float
    impact: AnomalyImpact
    expected_cost: float
    actual_cost: float
    detection_method: str
    method_scores: dict[str, float] = field(default_factory=dict)
    description: str = ""
    recommendations: tuple[str, ...] = ()


@dataclass
class AnomalyDetectionConfig:
    """Detection parameters.

    Attributes:
        sensitivity: 0..1; higher lowers the effective threshold.
        threshold: 0..1 combined score needed before sensitivity scaling.
        window_days: Trailing baseline window in days.
        methods: Enabled detectors, a subset of DETECTION_METHODS.
        seasonal_adjustment: Enables the weekday pattern detector.
    """

    sensitivity: float = 0.3
    threshold: float = 0.6
    window_days: int = 30
    methods: tuple[str, ...] = DETECTION_METHODS
    seasonal_adjustment: bool = True

    def __post_init__(self) -> None:
        if not 0.0 <= self.sensitivity <= 1.0:
            raise ConfigurationError(f"sensitivity must be within [0, 1], got {self.sensitivity}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigurationError(f"threshold must be within [0, 1], got {self.threshold}")
        if self.window_days < 1:
            raise ConfigurationError(f"window_days must be positive, got {self.window_days}")
        unknown = set(self.methods) - set(DETECTION_METHODS)
        if unknown:
            raise ConfigurationError(f"Unknown detection methods: {sorted(unknown)}")
        self.methods = tuple(method for method in DETECTION_METHODS if method in self.methods)

    @property
    def effective_threshold(self) -> float:
        return self.threshold * (1.0 - self.sensitivity / 2.0)


@dataclass(frozen=True)
class _MethodScore:
    raw: float
    expected: float

    @property
    def normalised(self) -> float:
        return min(self.raw / _RAW_SCORE_CEILING, 1.0)


def _spread_floor(spread: float, baseline: float) -> float:
    return max(spread, _RELATIVE_SPREAD_FLOOR * abs(baseline), _ABSOLUTE_SPREAD_FLOOR)


def _severity_for(score: float, effective_threshold: float) -> str:
    span = 1.0 - effective_threshold
    position = (score - effective_threshold) / span if span > 0 else 1.0
    if position < 0.25:
        return "low"
    if position < 0.5:
        return "medium"
    if position < 0.8:
        return "high"
    return "critical"


def _recommendations(anomaly_type: str, severity: str, service_name: str) -> tuple[str, ...]:
    if anomaly_type == "cost-spike":
        recs = [
            f"Review recent changes to {service_name} resources",
            "Check for unexpected usage growth or misconfigured scaling",
        ]
        if severity in ("high", "critical"):
            recs.append("Set a budget alert for this resource")
    else:
        recs = [
            "Confirm the resource was intentionally scaled down or stopped",
            "Verify that billing data for this period is complete",
        ]
    return tuple(recs)


class AnomalyDetectionEngine:
    """Stateless ensemble detector for per-resource cost series.

    Args:
        config: Detection parameters; defaults match the dashboard session.
    """

    def __init__(self, config: AnomalyDetectionConfig | None = None) -> None:
        self._config = config or AnomalyDetectionConfig()

    @property
    def config(self) -> AnomalyDetectionConfig:
        return self._config

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def detect(self, series: Iterable[TimeSeriesData]) -> list[AnomalyResult]:
        """Score every point of every resource series and return the anomalies.

        Args:
            series: Observations of any number of resources, in any order.

        Returns:
            Anomalies ordered by severity (desc), score (desc), resource id and
            timestamp. Empty input gives an empty list.
        """
        partitions = self._partition(series)
        anomalies: list[AnomalyResult] = []
        skipped = 0

        for resource_id in sorted(partitions):
            try:
                points = self._prepare(resource_id, partitions[resource_id])
            except DetectionInputError as exc:
                skipped += 1
                logger.warning(
                    "anomaly_partition_skipped",
                    resource_id=exc.resource_id,
                    reason=exc.reason,
                )
                continue
            anomalies.extend(self._detect_partition(resource_id, points))

        anomalies.sort(
            key=lambda a: (-_SEVERITY_RANK[a.severity], -a.score, a.resource_id, a.timestamp)
        )

        logger.info(
            "Anomaly detection completed",
            resources=len(partitions),
            skipped_resources=skipped,
            anomalies=len(anomalies),
        )
        return anomalies

    async def detect_async(self, series: Sequence[TimeSeriesData]) -> list[AnomalyResult]:
        """Run detect() in a worker thread so the event loop stays responsive."""
        return await asyncio.to_thread(self.detect, list(series))

    # ------------------------------------------------------------------
    # Partition handling
    # ------------------------------------------------------------------

    @staticmethod
    def _partition(series: Iterable[TimeSeriesData]) -> dict[str, list[TimeSeriesData]]:
        partitions: dict[str, list[TimeSeriesData]] = defaultdict(list)
        for point in series:
            partitions[point.resource_id].append(point)
        return dict(partitions)

    def _prepare(self, resource_id: str, points: list[TimeSeriesData]) -> list[TimeSeriesData]:
        """Validate a partition, merge same-timestamp points and order by time.

        Raises:
            DetectionInputError: If the partition has non-numeric or non-finite
                values, mixes naive and timezone-aware timestamps, or has too
                few distinct points for any detector.
        """
        if not resource_id:
            raise DetectionInputError(resource_id, "empty resource id")

        merged: dict[datetime, TimeSeriesData] = {}
        aware: set[bool] = set()
        for point in points:
            if isinstance(point.value, bool) or not isinstance(point.value, (int, float)):
                raise DetectionInputError(resource_id, f"non-numeric value {point.value!r} at {point.timestamp}")
            if not math.isfinite(point.value):
                raise DetectionInputError(resource_id, f"non-finite value at {point.timestamp.isoformat()}")
            aware.add(point.timestamp.tzinfo is not None)
            if len(aware) > 1:
                raise DetectionInputError(resource_id, "mixed naive and timezone-aware timestamps")
            existing = merged.get(point.timestamp)
            if existing is None:
                merged[point.timestamp] = point
            else:
                merged[point.timestamp] = TimeSeriesData(
                    timestamp=existing.timestamp,
                    value=existing.value + point.value,
                    resource_id=resource_id,
                    metadata=existing.metadata,
                )

        minimum = 1 + min(_MIN_PRIOR_POINTS[method] for method in self._active_methods())
        if len(merged) < minimum:
            raise DetectionInputError(resource_id, f"{len(merged)} points, need at least {minimum}")

        return [merged[ts] for ts in sorted(merged)]

    def _active_methods(self) -> tuple[str, ...]:
        methods = self._config.methods
        if not self._config.seasonal_adjustment:
            methods = tuple(m for m in methods if m != PATTERN_BASED)
        return methods or (STATISTICAL,)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _detect_partition(self, resource_id: str, points: list[TimeSeriesData]) -> list[AnomalyResult]:
        window = timedelta(days=self._config.window_days)
        effective_threshold = self._config.effective_threshold
        methods = self._active_methods()
        results: list[AnomalyResult] = []

        for index, point in enumerate(points):
            window_start = point.timestamp - window
            prior = [p for p in points[:index] if p.timestamp >= window_start]
            if not prior:
                continue

            scores: dict[str, _MethodScore] = {}
            for method in methods:
                score = self._score(method, point, prior)
                if score is not None:
                    scores[method] = score
            if not scores:
                continue

            # First method in DETECTION_METHODS order wins ties
            dominant = max(scores, key=lambda m: (scores[m].normalised, -DETECTION_METHODS.index(m)))
            combined = scores[dominant].normalised
            if combined < effective_threshold:
                continue

            results.append(
                self._build_result(
                    point=point,
                    combined=combined,
                    severity=_severity_for(combined, effective_threshold),
                    dominant=dominant,
                    expected=scores[dominant].expected,
                    method_scores={m: round(s.normalised, 4) for m, s in scores.items()},
                )
            )
        return results

    def _score(
        self,
        method: str,
        point: TimeSeriesData,
        prior: list[TimeSeriesData],
    ) -> _MethodScore | None:
        if method == STATISTICAL:
            return self._statistical_score(point.value, [p.value for p in prior])
        if method == TIME_SERIES:
            return self._time_series_score(point.value, [p.value for p in prior[-_TREND_LOOKBACK:]])
        weekday = point.timestamp.weekday()
        same_weekday = [p.value for p in prior if p.timestamp.weekday() == weekday]
        return self._pattern_score(point.value, same_weekday)

    @staticmethod
    def _statistical_score(value: float, prior: list[float]) -> _MethodScore | None:
        if len(prior) < _MIN_PRIOR_POINTS[STATISTICAL]:
            return None
        median = statistics.median(prior)
        mad = statistics.median(abs(v - median) for v in prior)
        spread = _spread_floor(_MAD_SCALE * mad, median)
        return _MethodScore(raw=abs(value - median) / spread, expected=median)

    @staticmethod
    def _time_series_score(value: float, prior: list[float]) -> _MethodScore | None:
        if len(prior) < _MIN_PRIOR_POINTS[TIME_SERIES]:
            return None
        x_values = list(range(len(prior)))
        slope, intercept = AnomalyDetectionEngine._linear_regression(x_values, prior)
        forecast = slope * len(prior) + intercept
        residuals = [y - (slope * x + intercept) for x, y in zip(x_values, prior)]
        residual_spread = math.sqrt(sum(r ** 2 for r in residuals) / len(residuals))
        spread = _spread_floor(residual_spread, forecast)
        return _MethodScore(raw=abs(value - forecast) / spread, expected=forecast)

    @staticmethod
    def _pattern_score(value: float, same_weekday: list[float]) -> _MethodScore | None:
        if len(same_weekday) < _MIN_PRIOR_POINTS[PATTERN_BASED]:
            return None
        mean = statistics.fmean(same_weekday)
        spread = _spread_floor(statistics.pstdev(same_weekday), mean)
        return _MethodScore(raw=abs(value - mean) / spread, expected=mean)

    @staticmethod
    def _linear_regression(x_values: list[int], y_values: list[float]) -> tuple[float, float]:
        """Least-squares slope and intercept.

        Args:
            x_values: Independent variable values.
            y_values: Dependent variable values.

        Returns:
            Tuple of (slope, intercept).
        """
        n = len(x_values)
        if n < 2:
            return 0.0, y_values[0] if y_values else 0.0

        sum_x = sum(x_values)
        sum_y = sum(y_values)
        sum_xy = sum(x * y for x, y in zip(x_values, y_values))
        sum_x2 = sum(x ** 2 for x in x_values)

        denom = n * sum_x2 - sum_x ** 2
        if denom == 0:
            return 0.0, sum_y / n

        slope = (n * sum_xy - sum_x * sum_y) / denom
        intercept = (sum_y - slope * sum_x) / n
        return slope, intercept

    # ------------------------------------------------------------------
    # Result construction
    # ------------------------------------------------------------------

    @staticmethod
    def _build_result(
        point: TimeSeriesData,
        combined: float,
        severity: str,
        dominant: str,
        expected: float,
        method_scores: dict[str, float],
    ) -> AnomalyResult:
        service_name = str(point.metadata.get("serviceName") or "Unknown")
        cost_impact = point.value - expected
        anomaly_type = "cost-spike" if cost_impact >= 0 else "cost-drop"
        percentage_change = cost_impact / abs(expected) * 100.0 if expected else 0.0
        direction = "above" if anomaly_type == "cost-spike" else "below"

        description = (
            f"{service_name} cost for {point.resource_id} was {point.value:.2f} on "
            f"{point.timestamp.date().isoformat()}, {abs(percentage_change):.1f}% {direction} "
            f"the expected {expected:.2f}"
        )

        return AnomalyResult(
            id=f"{dominant}_{point.resource_id}_{int(point.timestamp.timestamp())}",
            resource_id=point.resource_id,
            service_name=service_name,
            timestamp=point.timestamp,
            anomaly_type=anomaly_type,
            severity=severity,
            score=round(combined, 4),
            impact=AnomalyImpact(
                cost_impact=round(cost_impact, 4),
                percentage_change=round(percentage_change, 2),
            ),
            expected_cost=round(expected, 4),
            actual_cost=point.value,
            detection_method=dominant,
            method_scores=method_scores,
            description=description,
            recommendations=_recommendations(anomaly_type, severity, service_name),
        )


__all__ = [
    "AnomalyDetectionConfig",
    "AnomalyDetectionEngine",
    "AnomalyImpact",
    "AnomalyResult",
    "DETECTION_METHODS",
    "PATTERN_BASED",
    "SEVERITY_ORDER",
    "STATISTICAL",
    "TIME_SERIES",
    "TimeSeriesData",
]
