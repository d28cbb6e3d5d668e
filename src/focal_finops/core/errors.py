"""Error taxonomy for the Focal cache, anomaly and storage services.

Only QueryExecutionError ever reaches a consumer, and then only through the
``error`` field of a CachedQueryState or AnomalySession. The others are
caught at the component boundary and logged.
"""

from __future__ import annotations


class FocalError(Exception):
    """Base class for all Focal FinOps errors."""


class CacheIOError(FocalError):
    """The key-value store failed or returned an undecodable blob.

    Non-fatal: the aggregation cache treats the operation as a miss.
    """


class QueryExecutionError(FocalError):
    """The external query engine rejected, failed or timed out.

    Attributes:
        cache_key: Cache key (or query label) the failed fetch belonged to.
    """

    def __init__(self, message: str, cache_key: str | None = None) -> None:
        super().__init__(message)
        self.cache_key = cache_key


class DetectionInputError(FocalError):
    """A resource partition could not be scored (non-finite or too few points)."""

    def __init__(self, resource_id: str, reason: str) -> None:
        super().__init__(f"{resource_id}: {reason}")
        self.resource_id = resource_id
        self.reason = reason


class StorageQuotaError(FocalError):
    """Storage usage or quota could not be estimated."""


class PurgeStepError(FocalError):
    """One step of purge_all_data() failed; later steps still run.

    Attributes:
        step: Name of the failed purge step.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class ConfigurationError(FocalError):
    """Invalid configuration, e.g. an anomaly detection sensitivity outside [0, 1]."""


__all__ = [
    "CacheIOError",
    "ConfigurationError",
    "DetectionInputError",
    "FocalError",
    "PurgeStepError",
    "QueryExecutionError",
    "StorageQuotaError",
]
