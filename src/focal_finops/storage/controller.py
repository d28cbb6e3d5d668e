"""Storage controller: quota estimation, retention eviction and full purge.

Manages the physical footprint the cache and the query engine write into:

  - storage settings (mode, retention, warnings, auto-cleanup threshold)
    persisted as a whole document under the ``storageSettings`` key
  - a categorised usage breakdown of the data footprint
  - age-based retention cleanup of footprint files
  - an ordered, best-effort purge of everything this system stores
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from focal_finops.adapters.local_settings import load_document, save_document
from focal_finops.adapters.storage_footprint import BILLING_DATA_DIR, CACHE_DIR, INDEXES_DIR
from focal_finops.core.errors import PurgeStepError, StorageQuotaError
from focal_finops.core.interfaces import IKeyValueStore, ILocalSettingsStore, IStorageFootprint

logger = structlog.get_logger(__name__)

STORAGE_SETTINGS_KEY = "storageSettings"
OWNED_SETTINGS_KEYS: tuple[str, ...] = ("storageSettings", "anomalyCache", "currencySettings")
OWNED_SETTINGS_PREFIX = "focal"

# Breakdown proportions used when the footprint cannot be enumerated
_FALLBACK_PROPORTIONS = {"billing_data": 0.8, "indexes": 0.1, "cache": 0.07, "other": 0.03}

ConnectionCloser = Callable[[], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class StorageMode(str, Enum):
    PERSISTENT = "PERSISTENT"
    EPHEMERAL = "EPHEMERAL"


class RetentionSettings(BaseModel):
    days: int = Field(default=180, ge=0)
    label: str = "6 months"


class StorageSettings(BaseModel):
    """Persisted storage preferences. Every field has a default."""

    mode: StorageMode = StorageMode.PERSISTENT
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    show_warnings: bool = True
    auto_cleanup_threshold: float = Field(default=85.0, ge=0, le=100)


RETENTION_OPTIONS: tuple[RetentionSettings, ...] = (
    RetentionSettings(days=30, label="30 days"),
    RetentionSettings(days=90, label="3 months"),
    RetentionSettings(days=180, label="6 months"),
    RetentionSettings(days=365, label="1 year"),
    RetentionSettings(days=0, label="Forever"),
)


@dataclass
class StorageBreakdown:
    billing_data: float = 0
    indexes: float = 0
    cache: float = 0
    other: float = 0

    def total(self) -> float:
        return self.billing_data + self.indexes + self.cache + self.other


@dataclass
class StorageInfo:
    """Quota, usage and categorised breakdown of the data footprint."""

    quota: int = 0
    usage: int = 0
    usage_percent: float = 0.0
    breakdown: StorageBreakdown = field(default_factory=StorageBreakdown)
    breakdown_percent: StorageBreakdown = field(default_factory=StorageBreakdown)


@dataclass
class RetentionCleanupResult:
    deleted_files: int = 0
    freed_bytes: int = 0


@dataclass
class PurgeReport:
    """Outcome of purge_all_data(). Failed steps are listed, later steps still ran."""

    steps_completed: list[str] = field(default_factory=list)
    errors: list[PurgeStepError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


def format_bytes(num_bytes: float) -> str:
    """Human-readable size using binary units, e.g. ``1.5 KB``."""
    if num_bytes <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {units[exponent]}"


class StorageController:
    """Owns storage settings and every operation on the physical footprint.

    Args:
        footprint: Data directory footprint (billing data, indexes, cache files).
        kv_store: Key-value store holding the cache and metadata namespaces.
        settings_store: Local settings store for documents owned by this system.
        kv_namespaces: Namespaces deleted by purge_all_data().
        purge_grace_seconds: Pause between closing connections and deleting data.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        footprint: IStorageFootprint,
        kv_store: IKeyValueStore,
        settings_store: ILocalSettingsStore,
        kv_namespaces: tuple[str, ...] = ("focal_cache", "focal-metadata"),
        purge_grace_seconds: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._footprint = footprint
        self._kv_store = kv_store
        self._settings_store = settings_store
        self._kv_namespaces = kv_namespaces
        self._grace = purge_grace_seconds
        self._clock = clock
        self._connection_closers: list[ConnectionCloser] = []
        self._settings = load_document(settings_store, STORAGE_SETTINGS_KEY, StorageSettings)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> StorageSettings:
        return self._settings.model_copy(deep=True)

    def update_settings(self, **changes: object) -> StorageSettings:
        """Apply changes over the current settings and persist the whole document.

        Raises:
            pydantic.ValidationError: If a changed field is invalid.
        """
        merged = {**self._settings.model_dump(), **changes}
        self._settings = StorageSettings.model_validate(merged)
        save_document(self._settings_store, STORAGE_SETTINGS_KEY, self._settings)
        logger.info("storage_settings_updated", fields=sorted(changes))
        return self.get_settings()

    @staticmethod
    def get_retention_options() -> tuple[RetentionSettings, ...]:
        return RETENTION_OPTIONS

    def should_persist_data(self) -> bool:
        return self._settings.mode == StorageMode.PERSISTENT

    def should_auto_cleanup(self, usage_percent: float) -> bool:
        return usage_percent >= self._settings.auto_cleanup_threshold

    def register_connection_closer(self, closer: ConnectionCloser) -> None:
        """Register a coroutine function that closes live query-engine connections."""
        self._connection_closers.append(closer)

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def get_storage_info(self) -> StorageInfo:
        """Estimate quota and usage with a per-category breakdown.

        Returns all zeros when the footprint cannot estimate its usage.
        """
        try:
            estimate = await self._footprint.estimate()
            if estimate is None:
                raise StorageQuotaError("storage estimation is not supported")
            breakdown = await self._breakdown(estimate.usage)
        except (StorageQuotaError, OSError) as exc:
            logger.warning("storage_info_unavailable", error=str(exc))
            return StorageInfo()

        usage_percent = estimate.usage / estimate.quota * 100 if estimate.quota > 0 else 0.0
        total = breakdown.total()

        def percent(part: float) -> float:
            return part / total * 100 if total > 0 else 0.0

        return StorageInfo(
            quota=estimate.quota,
            usage=estimate.usage,
            usage_percent=usage_percent,
            breakdown=breakdown,
            breakdown_percent=StorageBreakdown(
                billing_data=percent(breakdown.billing_data),
                indexes=percent(breakdown.indexes),
                cache=percent(breakdown.cache),
                other=percent(breakdown.other),
            ),
        )

    async def _breakdown(self, usage: int) -> StorageBreakdown:
        if not self._footprint.supports_enumeration:
            return StorageBreakdown(**{name: usage * share for name, share in _FALLBACK_PROPORTIONS.items()})

        billing_data = await self._footprint.category_size(BILLING_DATA_DIR)
        indexes = await self._footprint.category_size(INDEXES_DIR)
        cache = await self._footprint.category_size(CACHE_DIR)
        return StorageBreakdown(
            billing_data=billing_data,
            indexes=indexes,
            cache=cache,
            other=max(usage - billing_data - indexes - cache, 0),
        )

    async def should_show_storage_warning(self) -> bool:
        if not self._settings.show_warnings:
            return False
        info = await self.get_storage_info()
        return info.usage_percent >= self._settings.auto_cleanup_threshold

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    async def run_retention_cleanup(self) -> RetentionCleanupResult:
        """Delete footprint files last modified before ``now - retention.days``.

        No-op when retention is "forever" (0 days).
        """
        result = RetentionCleanupResult()
        days = self._settings.retention.days
        if days == 0:
            logger.debug("retention_cleanup_skipped", reason="retention is forever")
            return result

        cutoff = self._clock() - timedelta(days=days)
        try:
            files = await self._footprint.list_files()
        except OSError as exc:
            logger.warning("retention_cleanup_list_failed", error=str(exc))
            return result

        for entry in files:
            if entry.last_modified >= cutoff:
                continue
            try:
                await self._footprint.remove_file(entry.path)
            except (OSError, ValueError, NotImplementedError) as exc:
                logger.warning("retention_cleanup_remove_failed", path=entry.path, error=str(exc))
                continue
            result.deleted_files += 1
            result.freed_bytes += entry.size

        logger.info(
            "Retention cleanup completed",
            retention_days=days,
            deleted_files=result.deleted_files,
            freed=format_bytes(result.freed_bytes),
        )
        return result

    async def run_maintenance(self, cleanup_cache: Callable[[], Awaitable[int]] | None = None) -> bool:
        """Run retention cleanup (and the cache sweep) when usage crosses the threshold.

        Args:
            cleanup_cache: Optional coroutine function removing expired cache entries.

        Returns:
            True when cleanup ran.
        """
        info = await self.get_storage_info()
        if not self.should_auto_cleanup(info.usage_percent):
            return False

        logger.info("storage_auto_cleanup_triggered", usage_percent=round(info.usage_percent, 2))
        await self.run_retention_cleanup()
        if cleanup_cache is not None:
            await cleanup_cache()
        return True

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge_all_data(self) -> PurgeReport:
        """Delete everything this system stores, continuing past failed steps.

        Order: close connections, grace period, data footprint, key-value
        namespaces, owned local settings keys.
        """
        report = PurgeReport()
        logger.warning("storage_purge_started")

        await self._purge_step(report, "close_connections", self._close_connections)
        await asyncio.sleep(self._grace)
        await self._purge_step(report, "clear_footprint", self._footprint.clear)
        await self._purge_step(report, "clear_kv_store", self._clear_kv_namespaces)
        await self._purge_step(report, "clear_local_settings", self._clear_local_settings)

        self._settings = StorageSettings()
        logger.warning(
            "storage_purge_completed",
            steps_completed=report.steps_completed,
            failed_steps=[error.step for error in report.errors],
        )
        return report

    async def _purge_step(
        self,
        report: PurgeReport,
        step: str,
        action: Callable[[], Awaitable[object]],
    ) -> None:
        try:
            await action()
        except Exception as exc:
            error = PurgeStepError(step, str(exc))
            report.errors.append(error)
            logger.error("storage_purge_step_failed", step=step, error=str(exc))
            return
        report.steps_completed.append(step)

    async def _close_connections(self) -> None:
        failures: list[str] = []
        for closer in self._connection_closers:
            try:
                await closer()
            except Exception as exc:
                failures.append(str(exc))
        if failures:
            raise PurgeStepError("close_connections", "; ".join(failures))

    async def _clear_kv_namespaces(self) -> None:
        for namespace in self._kv_namespaces:
            for key in await self._kv_store.list_keys(namespace):
                await self._kv_store.delete(namespace, key)

    async def _clear_local_settings(self) -> None:
        for key in list(self._settings_store.keys()):
            if key in OWNED_SETTINGS_KEYS or key.startswith(OWNED_SETTINGS_PREFIX):
                self._settings_store.remove_item(key)


__all__ = [
    "OWNED_SETTINGS_KEYS",
    "PurgeReport",
    "RETENTION_OPTIONS",
    "RetentionCleanupResult",
    "RetentionSettings",
    "STORAGE_SETTINGS_KEY",
    "StorageBreakdown",
    "StorageController",
    "StorageInfo",
    "StorageMode",
    "StorageSettings",
    "format_bytes",
]
