"""Unit tests for the storage controller."""

import os
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from focal_finops.adapters.kv_store import InMemoryKeyValueStore
from focal_finops.adapters.local_settings import InMemorySettingsStore
from focal_finops.adapters.storage_footprint import LocalDirectoryFootprint, UnsupportedFootprint
from focal_finops.cache.aggregation_cache import AggregationCache
from focal_finops.core.interfaces import StorageEstimate
from focal_finops.storage.controller import (
    STORAGE_SETTINGS_KEY,
    StorageController,
    StorageMode,
    StorageSettings,
    format_bytes,
)


def _write(root: Path, relative: str, size: int, modified: datetime | None = None) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    if modified is not None:
        os.utime(path, (modified.timestamp(), modified.timestamp()))
    return path


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "focal-data"


@pytest.fixture
def footprint(data_dir: Path) -> LocalDirectoryFootprint:
    return LocalDirectoryFootprint(data_dir, quota_bytes=10_000)


@pytest.fixture
def controller(
    footprint: LocalDirectoryFootprint,
    kv_store: InMemoryKeyValueStore,
    settings_store: InMemorySettingsStore,
    clock,
) -> StorageController:
    return StorageController(
        footprint,
        kv_store,
        settings_store,
        kv_namespaces=("focal_cache", "focal-metadata"),
        purge_grace_seconds=0,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestStorageSettings:
    """Tests for settings defaults, persistence and merge-with-defaults."""

    def test_defaults(self, controller: StorageController) -> None:
        current = controller.get_settings()

        assert current.mode == StorageMode.PERSISTENT
        assert current.retention.days == 180
        assert current.retention.label == "6 months"
        assert current.show_warnings is True
        assert current.auto_cleanup_threshold == 85
        assert controller.should_persist_data()

    def test_update_persists_whole_document(
        self,
        controller: StorageController,
        footprint,
        kv_store,
        settings_store: InMemorySettingsStore,
    ) -> None:
        controller.update_settings(mode=StorageMode.EPHEMERAL, retention={"days": 30, "label": "30 days"})

        reloaded = StorageController(footprint, kv_store, settings_store)

        assert reloaded.get_settings().mode == StorageMode.EPHEMERAL
        assert reloaded.get_settings().retention.days == 30
        assert not reloaded.should_persist_data()

    def test_partial_document_merges_over_defaults(self, footprint, kv_store) -> None:
        store = InMemorySettingsStore({STORAGE_SETTINGS_KEY: '{"show_warnings": false}'})

        current = StorageController(footprint, kv_store, store).get_settings()

        assert current.show_warnings is False
        assert current.retention.days == 180

    def test_invalid_document_falls_back_to_defaults(self, footprint, kv_store) -> None:
        store = InMemorySettingsStore({STORAGE_SETTINGS_KEY: '{"auto_cleanup_threshold": "lots"}'})

        assert StorageController(footprint, kv_store, store).get_settings() == StorageSettings()

    def test_retention_options(self, controller: StorageController) -> None:
        options = controller.get_retention_options()

        assert [o.days for o in options] == [30, 90, 180, 365, 0]
        assert options[-1].label == "Forever"

    def test_should_auto_cleanup_threshold(self, controller: StorageController) -> None:
        assert controller.should_auto_cleanup(85.0)
        assert controller.should_auto_cleanup(99.0)
        assert not controller.should_auto_cleanup(84.9)


# ---------------------------------------------------------------------------
# Storage info
# ---------------------------------------------------------------------------


class TestStorageInfo:
    """Tests for usage estimation and the categorised breakdown."""

    @pytest.mark.asyncio
    async def test_breakdown_from_category_directories(self, controller: StorageController, data_dir: Path) -> None:
        _write(data_dir, "billing-data/2026-01.parquet", 600)
        _write(data_dir, "indexes/resource.idx", 200)
        _write(data_dir, "cache/daily.json", 100)
        _write(data_dir, "manifest.json", 100)

        info = await controller.get_storage_info()

        assert info.quota == 10_000
        assert info.usage == 1000
        assert info.usage_percent == pytest.approx(10.0)
        assert (info.breakdown.billing_data, info.breakdown.indexes, info.breakdown.cache, info.breakdown.other) == (
            600,
            200,
            100,
            100,
        )
        assert info.breakdown_percent.billing_data == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_fallback_proportions_without_enumeration(self, kv_store, settings_store) -> None:
        footprint = AsyncMock()
        footprint.supports_enumeration = False
        footprint.estimate = AsyncMock(return_value=StorageEstimate(quota=2000, usage=1000))
        controller = StorageController(footprint, kv_store, settings_store)

        info = await controller.get_storage_info()

        assert info.breakdown.billing_data == pytest.approx(800)
        assert info.breakdown.indexes == pytest.approx(100)
        assert info.breakdown.cache == pytest.approx(70)
        assert info.breakdown.other == pytest.approx(30)
        assert info.usage_percent == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_unsupported_estimate_reports_zeros(self, kv_store, settings_store) -> None:
        controller = StorageController(UnsupportedFootprint(), kv_store, settings_store)

        info = await controller.get_storage_info()

        assert (info.quota, info.usage, info.usage_percent) == (0, 0, 0.0)
        assert info.breakdown.total() == 0

    @pytest.mark.asyncio
    async def test_storage_warning_respects_setting(self, controller: StorageController, data_dir: Path) -> None:
        _write(data_dir, "billing-data/big.parquet", 9000)

        assert await controller.should_show_storage_warning()

        controller.update_settings(show_warnings=False)
        assert not await controller.should_show_storage_warning()


# ---------------------------------------------------------------------------
# Retention cleanup
# ---------------------------------------------------------------------------


class TestRetentionCleanup:
    """Tests for age-based eviction."""

    @pytest.mark.asyncio
    async def test_retention_boundary(self, controller: StorageController, data_dir: Path, now: datetime) -> None:
        controller.update_settings(retention={"days": 30, "label": "30 days"})
        recent = _write(data_dir, "billing-data/recent.parquet", 100, now - timedelta(days=29))
        old = _write(data_dir, "billing-data/old.parquet", 250, now - timedelta(days=31))

        result = await controller.run_retention_cleanup()

        assert result.deleted_files == 1
        assert result.freed_bytes == 250
        assert recent.exists()
        assert not old.exists()

    @pytest.mark.asyncio
    async def test_forever_retention_is_noop(self, controller: StorageController, data_dir: Path, now: datetime) -> None:
        controller.update_settings(retention={"days": 0, "label": "Forever"})
        ancient = _write(data_dir, "billing-data/2019.parquet", 100, now - timedelta(days=2000))

        result = await controller.run_retention_cleanup()

        assert (result.deleted_files, result.freed_bytes) == (0, 0)
        assert ancient.exists()

    @pytest.mark.asyncio
    async def test_maintenance_runs_only_above_threshold(
        self,
        controller: StorageController,
        data_dir: Path,
        now: datetime,
    ) -> None:
        cleanup_cache = AsyncMock(return_value=0)
        _write(data_dir, "billing-data/old.parquet", 500, now - timedelta(days=400))

        assert await controller.run_maintenance(cleanup_cache) is False
        cleanup_cache.assert_not_awaited()

        _write(data_dir, "billing-data/current.parquet", 8500, now)

        assert await controller.run_maintenance(cleanup_cache) is True
        cleanup_cache.assert_awaited_once()
        assert not (data_dir / "billing-data/old.parquet").exists()


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------


class TestPurge:
    """Tests for purge_all_data()."""

    @pytest.mark.asyncio
    async def test_purge_scenario(
        self,
        controller: StorageController,
        data_dir: Path,
        kv_store: InMemoryKeyValueStore,
        settings_store: InMemorySettingsStore,
        clock,
    ) -> None:
        cache = AggregationCache(kv_store, namespace="focal_cache", clock=clock)
        await cache.set_kpis({"totalCost": 10.0})
        await kv_store.set("focal-metadata", "schema-version", b"1")
        _write(data_dir, "billing-data/2026-01.parquet", 700)
        _write(data_dir, "indexes/a.idx", 100)
        controller.update_settings(show_warnings=False)
        settings_store.set_item("anomalyCache", "{}")
        settings_store.set_item("focal:anomaly-settings", "{}")
        settings_store.set_item("other-app", "keep")
        closer = AsyncMock()
        controller.register_connection_closer(closer)

        report = await controller.purge_all_data()

        assert report.succeeded
        assert report.steps_completed == [
            "close_connections",
            "clear_footprint",
            "clear_kv_store",
            "clear_local_settings",
        ]
        closer.assert_awaited_once()
        assert (await controller.get_storage_info()).usage == 0
        assert await cache.get_kpis() is None
        assert await kv_store.list_keys("focal-metadata") == []
        assert settings_store.keys() == ["other-app"]
        assert controller.get_settings() == StorageSettings()

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_later_steps(
        self,
        kv_store: InMemoryKeyValueStore,
        settings_store: InMemorySettingsStore,
    ) -> None:
        footprint = AsyncMock()
        footprint.clear = AsyncMock(side_effect=OSError("device busy"))
        controller = StorageController(footprint, kv_store, settings_store, purge_grace_seconds=0)
        failing_closer = AsyncMock(side_effect=RuntimeError("connection stuck"))
        controller.register_connection_closer(failing_closer)
        await kv_store.set("focal_cache", "kpi:latest", b"{}")
        settings_store.set_item("storageSettings", "{}")

        report = await controller.purge_all_data()

        assert not report.succeeded
        assert [error.step for error in report.errors] == ["close_connections", "clear_footprint"]
        assert report.steps_completed == ["clear_kv_store", "clear_local_settings"]
        assert await kv_store.list_keys("focal_cache") == []
        assert settings_store.keys() == []


class TestFormatBytes:
    """Tests for the human-readable size helper."""

    @pytest.mark.parametrize(
        ("num_bytes", "expected"),
        [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (1024 ** 2, "1 MB"), (5 * 1024 ** 3, "5 GB")],
    )
    def test_format_bytes(self, num_bytes: int, expected: str) -> None:
        assert format_bytes(num_bytes) == expected
