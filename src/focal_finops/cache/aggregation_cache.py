"""Aggregation cache: typed TTL cache over the namespaced key-value store.

Pre-computed dashboard aggregations are cached so repeat visits load
instantly. Each entry is a JSON envelope carrying the value, its kind, the
write time and the TTL.

Cache kinds and default TTLs:
    daily_costs        4 hours   changes with new data
    monthly_costs     24 hours   fairly stable
    service_breakdown  4 hours
    resource_costs     4 hours
    anomalies          1 hour    detection results go stale quickly
    kpi               15 minutes

Key invariants:
  - An entry is live while ``now - cached_at < ttl``; at ``age >= ttl`` it is
    absent. Expired entries are not deleted on read; cleanup() sweeps them.
  - ``set(key, None, ttl_seconds=0)`` deletes the entry (invalidate).
  - The cache is a performance optimisation only: store failures are logged
    as CacheIOError warnings and reported as misses, never raised.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from focal_finops.core.errors import CacheIOError
from focal_finops.core.interfaces import IKeyValueStore

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS: dict[str, float] = {
    "daily_costs": 4 * 60 * 60,
    "monthly_costs": 24 * 60 * 60,
    "service_breakdown": 4 * 60 * 60,
    "resource_costs": 4 * 60 * 60,
    "anomalies": 1 * 60 * 60,
    "kpi": 15 * 60,
}

KPI_CACHE_KEY = "kpi:latest"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def make_cache_key(kind: str, params: dict[str, str | int] | None = None) -> str:
    """Build a deterministic cache key: ``kind:a=1&b=2`` with params sorted by name."""
    if not params:
        return kind
    param_str = "&".join(f"{name}={value}" for name, value in sorted(params.items()))
    return f"{kind}:{param_str}"


class CacheEntry(BaseModel):
    """Envelope stored for every cached value.

    Attributes:
        key: Caller-defined cache key.
        value: JSON-serialisable payload.
        kind: Coarse category used for bulk invalidation and stats.
        cached_at: Write time (UTC).
        ttl_seconds: Hard expiry relative to cached_at.
    """

    key: str
    value: Any
    kind: str
    cached_at: datetime
    ttl_seconds: float

    @property
    def expires_at(self) -> datetime:
        return self.cached_at + timedelta(seconds=self.ttl_seconds)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.cached_at).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return self.age_seconds(now) >= self.ttl_seconds


@dataclass
class CacheStats:
    """Aggregate cache diagnostics.

    Attributes:
        total_entries: Number of entries in the namespace (expired included).
        total_size: Approximate payload size in bytes.
        entries_by_type: Entry count per kind.
        oldest_entry: Earliest cached_at, if any.
        newest_entry: Latest cached_at, if any.
    """

    total_entries: int = 0
    total_size: int = 0
    entries_by_type: dict[str, int] = field(default_factory=dict)
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


class AggregationCache:
    """TTL cache for dashboard aggregations with per-kind invalidation.

    Args:
        store: Namespaced key-value store holding the envelopes.
        namespace: Store namespace owned by this cache.
        default_ttl_seconds: TTL used for kinds without an entry in
            CACHE_TTL_SECONDS when the caller gives none.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: IKeyValueStore,
        namespace: str = "focal_cache",
        default_ttl_seconds: float = 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    @property
    def namespace(self) -> str:
        return self._namespace

    def now(self) -> datetime:
        return self._clock()

    def ttl_for_kind(self, kind: str) -> float:
        return CACHE_TTL_SECONDS.get(kind, self._default_ttl)

    # ------------------------------------------------------------------
    # Envelope I/O
    # ------------------------------------------------------------------

    async def _read_entry(self, key: str) -> CacheEntry | None:
        try:
            blob = await self._store.get(self._namespace, key)
        except Exception as exc:
            self._warn("get", key, exc)
            return None
        if blob is None:
            return None
        try:
            return CacheEntry.model_validate_json(blob)
        except ValidationError as exc:
            self._warn("decode", key, exc)
            return None

    def _warn(self, operation: str, key: str | None, exc: Exception) -> None:
        error = CacheIOError(f"{operation} failed for {key!r}: {exc}")
        logger.warning(
            "aggregation_cache_io_error",
            operation=operation,
            key=key,
            namespace=self._namespace,
            error=str(error),
        )

    async def _iter_entries(self) -> list[CacheEntry]:
        try:
            keys = await self._store.list_keys(self._namespace)
        except Exception as exc:
            self._warn("list_keys", None, exc)
            return []
        entries: list[CacheEntry] = []
        for key in keys:
            entry = await self._read_entry(key)
            if entry is not None:
                entries.append(entry)
        return entries

    async def _delete(self, key: str) -> bool:
        try:
            await self._store.delete(self._namespace, key)
        except Exception as exc:
            self._warn("delete", key, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Return the live envelope for key, or None if absent or expired."""
        entry = await self._read_entry(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        """Return the cached value for key, or None if absent or expired."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
        kind: str = "custom",
    ) -> None:
        """Upsert a value. ``value=None`` with ``ttl_seconds=0`` invalidates the key.

        Args:
            key: Cache key.
            value: JSON-serialisable payload.
            ttl_seconds: Entry lifetime; None uses the kind's default TTL.
            kind: Category tag for invalidate_kind() and stats().
        """
        if value is None and ttl_seconds == 0:
            await self.invalidate(key)
            return

        entry = CacheEntry(
            key=key,
            value=value,
            kind=kind,
            cached_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self.ttl_for_kind(kind),
        )
        try:
            blob = entry.model_dump_json().encode("utf-8")
            await self._store.set(self._namespace, key, blob)
        except Exception as exc:
            self._warn("set", key, exc)
            return

        logger.debug("aggregation_cache_set", key=key, kind=kind, ttl_seconds=entry.ttl_seconds)

    async def invalidate(self, key: str) -> None:
        """Delete a single entry."""
        if await self._delete(key):
            logger.debug("aggregation_cache_invalidated", key=key)

    async def invalidate_kind(self, kind: str) -> int:
        """Delete every entry tagged with kind. Returns the number deleted."""
        deleted = 0
        for entry in await self._iter_entries():
            if entry.kind == kind and await self._delete(entry.key):
                deleted += 1
        logger.info("aggregation_cache_kind_invalidated", kind=kind, deleted=deleted)
        return deleted

    async def invalidate_all(self) -> int:
        """Delete everything in this cache namespace. Returns the number deleted."""
        try:
            keys = await self._store.list_keys(self._namespace)
        except Exception as exc:
            self._warn("list_keys", None, exc)
            return 0
        deleted = 0
        for key in keys:
            if await self._delete(key):
                deleted += 1
        logger.info("aggregation_cache_cleared", deleted=deleted)
        return deleted

    async def cleanup(self) -> int:
        """Delete entries whose ``cached_at + ttl`` has passed. Returns the count removed."""
        now = self._clock()
        deleted = 0
        for entry in await self._iter_entries():
            if entry.is_expired(now) and await self._delete(entry.key):
                deleted += 1
        if deleted:
            logger.info("aggregation_cache_cleanup", deleted=deleted)
        return deleted

    async def stats(self) -> CacheStats:
        """Aggregate diagnostics across the namespace."""
        stats = CacheStats()
        for entry in await self._iter_entries():
            stats.total_entries += 1
            stats.entries_by_type[entry.kind] = stats.entries_by_type.get(entry.kind, 0) + 1
            # Rough size: serialised payload only
            stats.total_size += len(json.dumps(entry.value, default=str))
            if stats.oldest_entry is None or entry.cached_at < stats.oldest_entry:
                stats.oldest_entry = entry.cached_at
            if stats.newest_entry is None or entry.cached_at > stats.newest_entry:
                stats.newest_entry = entry.cached_at
        return stats

    # ------------------------------------------------------------------
    # Typed helpers for the standard dashboard aggregations
    # ------------------------------------------------------------------

    async def get_daily_costs(self, start_date: str, end_date: str) -> list[dict[str, Any]] | None:
        return await self.get(make_cache_key("daily_costs", {"start": start_date, "end": end_date}))

    async def set_daily_costs(self, start_date: str, end_date: str, data: list[dict[str, Any]]) -> None:
        key = make_cache_key("daily_costs", {"start": start_date, "end": end_date})
        await self.set(key, data, kind="daily_costs")
        logger.info("daily_costs_cached", entries=len(data))

    async def get_monthly_summary(self, year: int) -> list[dict[str, Any]] | None:
        return await self.get(make_cache_key("monthly_costs", {"year": year}))

    async def set_monthly_summary(self, year: int, data: list[dict[str, Any]]) -> None:
        await self.set(make_cache_key("monthly_costs", {"year": year}), data, kind="monthly_costs")
        logger.info("monthly_summary_cached", entries=len(data), year=year)

    async def get_service_breakdown(self, start_date: str, end_date: str) -> list[dict[str, Any]] | None:
        return await self.get(make_cache_key("service_breakdown", {"start": start_date, "end": end_date}))

    async def set_service_breakdown(self, start_date: str, end_date: str, data: list[dict[str, Any]]) -> None:
        key = make_cache_key("service_breakdown", {"start": start_date, "end": end_date})
        await self.set(key, data, kind="service_breakdown")
        logger.info("service_breakdown_cached", entries=len(data))

    async def get_resource_costs(self, limit: int = 100) -> list[dict[str, Any]] | None:
        return await self.get(make_cache_key("resource_costs", {"limit": limit}))

    async def set_resource_costs(self, data: list[dict[str, Any]], limit: int = 100) -> None:
        await self.set(make_cache_key("resource_costs", {"limit": limit}), data, kind="resource_costs")
        logger.info("resource_costs_cached", entries=len(data))

    async def get_anomalies(self, start_date: str, end_date: str) -> list[dict[str, Any]] | None:
        return await self.get(make_cache_key("anomalies", {"start": start_date, "end": end_date}))

    async def set_anomalies(self, start_date: str, end_date: str, data: list[dict[str, Any]]) -> None:
        key = make_cache_key("anomalies", {"start": start_date, "end": end_date})
        await self.set(key, data, kind="anomalies")
        logger.info("anomalies_cached", entries=len(data))

    async def get_kpis(self) -> dict[str, Any] | None:
        return await self.get(KPI_CACHE_KEY)

    async def set_kpis(self, data: dict[str, Any]) -> None:
        await self.set(KPI_CACHE_KEY, data, kind="kpi")
        logger.info("kpis_cached")


__all__ = [
    "AggregationCache",
    "CACHE_TTL_SECONDS",
    "CacheEntry",
    "CacheStats",
    "make_cache_key",
]
