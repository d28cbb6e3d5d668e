"""Lifecycle tests for the service container's default key-value store."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from focal_finops.adapters.kv_store import SqlAlchemyKeyValueStore
from focal_finops.adapters.local_settings import InMemorySettingsStore
from focal_finops.adapters.storage_footprint import LocalDirectoryFootprint
from focal_finops.container import ServiceContainer
from focal_finops.settings import Settings


def _container(settings: Settings, tmp_path: Path) -> ServiceContainer:
    query_engine = AsyncMock()
    query_engine.query = AsyncMock(return_value=[])
    return ServiceContainer(
        settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"}),
        query_engine=query_engine,
        settings_store=InMemorySettingsStore(),
        footprint=LocalDirectoryFootprint(tmp_path / "focal-data", quota_bytes=10_000),
    )


class TestDefaultKeyValueStore:
    """The container builds the SQL store from settings and releases it on close."""

    @pytest.mark.asyncio
    async def test_store_is_built_from_database_url_and_disposed(
        self, settings: Settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        container = _container(settings, tmp_path)
        assert isinstance(container.kv_store, SqlAlchemyKeyValueStore)
        dispose = AsyncMock(wraps=container.kv_store.dispose)
        monkeypatch.setattr(container.kv_store, "dispose", dispose)

        await container.start()
        await container.cache.set("kpi:latest", {"TotalCost": 10.0}, kind="kpi")
        assert await container.cache.get("kpi:latest") == {"TotalCost": 10.0}
        await container.close()

        dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entries_survive_a_container_restart(self, settings: Settings, tmp_path: Path) -> None:
        first = _container(settings, tmp_path)
        await first.start()
        await first.cache.set("kpi:latest", {"TotalCost": 10.0}, kind="kpi")
        await first.close()

        second = _container(settings, tmp_path)
        await second.start()
        try:
            assert await second.cache.get("kpi:latest") == {"TotalCost": 10.0}
        finally:
            await second.close()
