"""Cost anomaly detection over per-resource daily cost series.

Modules:
    engine: AnomalyDetectionEngine, the pure multi-method detector
    session: AnomalySession, the shared coordinator that queries, detects,
        persists and summarises
"""

from focal_finops.anomaly.engine import AnomalyDetectionConfig, AnomalyDetectionEngine, AnomalyResult, TimeSeriesData
from focal_finops.anomaly.session import AnomalyFilters, AnomalySession, AnomalySummary

__all__ = [
    "AnomalyDetectionConfig",
    "AnomalyDetectionEngine",
    "AnomalyFilters",
    "AnomalyResult",
    "AnomalySession",
    "AnomalySummary",
    "TimeSeriesData",
]
