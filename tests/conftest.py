"""Shared test fixtures for focal-finops tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

import pytest

from focal_finops.adapters.kv_store import InMemoryKeyValueStore
from focal_finops.adapters.local_settings import InMemorySettingsStore
from focal_finops.anomaly.engine import TimeSeriesData
from focal_finops.cache.aggregation_cache import AggregationCache
from focal_finops.settings import Settings


class FakeClock:
    """Manually advanced UTC clock injected into services under test."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time."""
    return datetime(2026, 2, 26, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now: datetime) -> FakeClock:
    return FakeClock(now)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Provide test settings with safe defaults (no timers, no grace period)."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        data_dir=str(tmp_path / "focal-data"),
        settings_file=str(tmp_path / "focal-settings.json"),
        storage_quota_bytes=10 * 1024 * 1024,
        anomaly_auto_refresh_seconds=0,
        purge_grace_seconds=0,
        query_timeout_seconds=5,
        log_json=False,
    )


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def settings_store() -> InMemorySettingsStore:
    return InMemorySettingsStore()


@pytest.fixture
def cache(kv_store: InMemoryKeyValueStore, clock: FakeClock) -> AggregationCache:
    return AggregationCache(kv_store, namespace="focal_cache", clock=clock)


@pytest.fixture
def make_series() -> Callable[..., list[TimeSeriesData]]:
    """Factory building one resource's daily cost series."""

    def _make(
        resource_id: str,
        values: Sequence[float],
        start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc),
        service_name: str = "Virtual Machines",
    ) -> list[TimeSeriesData]:
        return [
            TimeSeriesData(
                timestamp=start + timedelta(days=offset),
                value=value,
                resource_id=resource_id,
                metadata={"serviceName": service_name},
            )
            for offset, value in enumerate(values)
        ]

    return _make
