"""Composition root: builds every Focal service exactly once.

The aggregation cache, the cached-query orchestrator, the anomaly session and
the storage controller are shared by reference between all consumers. Tests
pass fakes for any of the boundaries (query engine, key-value store, settings
store, footprint) and a fake clock.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from focal_finops.adapters.kv_store import InMemoryKeyValueStore, SqlAlchemyKeyValueStore
from focal_finops.adapters.local_settings import JsonFileSettingsStore, load_document
from focal_finops.adapters.query_engine import SqlAlchemyQueryEngine
from focal_finops.adapters.storage_footprint import LocalDirectoryFootprint
from focal_finops.anomaly.session import AnomalySession
from focal_finops.cache.aggregation_cache import AggregationCache
from focal_finops.cache.cached_query import CachedQueryOrchestrator
from focal_finops.core.interfaces import IKeyValueStore, ILocalSettingsStore, IQueryEngine, IStorageFootprint
from focal_finops.settings import Settings
from focal_finops.storage.controller import (
    STORAGE_SETTINGS_KEY,
    StorageController,
    StorageMode,
    StorageSettings,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ServiceContainer:
    """Owns the process-wide services and their lifecycle.

    Args:
        settings: Service configuration.
        query_engine: FOCUS query engine; defaults to SqlAlchemyQueryEngine.
        kv_store: Key-value store; defaults to the SQLAlchemy table, or an
            in-memory store when the saved storage mode is EPHEMERAL.
        settings_store: Local settings store; defaults to the JSON settings file.
        footprint: Data footprint; defaults to the local data directory.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        query_engine: IQueryEngine | None = None,
        kv_store: IKeyValueStore | None = None,
        settings_store: ILocalSettingsStore | None = None,
        footprint: IStorageFootprint | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or Settings()
        self._engines: list[AsyncEngine] = []
        self._query_engine_sql: AsyncEngine | None = None

        self.settings_store = settings_store or JsonFileSettingsStore(self.settings.settings_file)
        self.kv_store = kv_store or self._default_kv_store()
        self.query_engine = query_engine or self._default_query_engine()
        self.footprint = footprint or LocalDirectoryFootprint(
            self.settings.data_dir, quota_bytes=self.settings.storage_quota_bytes
        )

        self.cache = AggregationCache(
            self.kv_store,
            namespace=self.settings.cache_namespace,
            default_ttl_seconds=self.settings.cache_default_ttl_seconds,
            clock=clock,
        )
        self.orchestrator = CachedQueryOrchestrator(
            self.cache,
            query_timeout_seconds=self.settings.query_timeout_seconds,
        )
        self.anomaly_session = AnomalySession(
            self.query_engine,
            self.settings_store,
            window_days=self.settings.anomaly_window_days,
            auto_refresh_interval_seconds=self.settings.anomaly_auto_refresh_seconds,
            freshness_seconds=self.settings.anomaly_freshness_seconds,
            table_name=self.settings.focus_table_name,
            clock=clock,
        )
        self.storage = StorageController(
            self.footprint,
            self.kv_store,
            self.settings_store,
            kv_namespaces=(self.settings.cache_namespace, self.settings.metadata_namespace),
            purge_grace_seconds=self.settings.purge_grace_seconds,
            clock=clock,
        )
        self.storage.register_connection_closer(self._close_query_connections)

    def _default_kv_store(self) -> IKeyValueStore:
        storage_settings = load_document(self.settings_store, STORAGE_SETTINGS_KEY, StorageSettings)
        if storage_settings.mode == StorageMode.EPHEMERAL:
            logger.info("kv_store_ephemeral")
            return InMemoryKeyValueStore()
        return SqlAlchemyKeyValueStore.from_url(self.settings.database_url)

    def _default_query_engine(self) -> IQueryEngine:
        engine = create_async_engine(self.settings.focus_database_url or self.settings.database_url)
        self._engines.append(engine)
        self._query_engine_sql = engine
        return SqlAlchemyQueryEngine(engine, timeout_seconds=self.settings.query_timeout_seconds)

    async def _close_query_connections(self) -> None:
        if self._query_engine_sql is not None:
            await self._query_engine_sql.dispose()

    async def start(self) -> None:
        """Create the key-value schema and start the anomaly session."""
        if isinstance(self.kv_store, SqlAlchemyKeyValueStore):
            await self.kv_store.create_schema()
        await self.anomaly_session.start()
        logger.info("service_container_started", service=self.settings.service_name)

    async def close(self) -> None:
        """Stop timers, cancel in-flight fetches and release connections."""
        await self.anomaly_session.close()
        await self.orchestrator.close()
        if isinstance(self.kv_store, SqlAlchemyKeyValueStore):
            await self.kv_store.dispose()
        for engine in self._engines:
            await engine.dispose()
        logger.info("service_container_closed", service=self.settings.service_name)


__all__ = ["ServiceContainer"]
