"""Key-value store adapters for the Focal FinOps services.

SqlAlchemyKeyValueStore persists blobs in the focal_kv_entries table through
an async SQLAlchemy engine (sqlite+aiosqlite by default). InMemoryKeyValueStore
keeps blobs in a dict and is used for ephemeral storage mode and tests.

Both implement IKeyValueStore from core/interfaces.py. Errors are not caught
here; the aggregation cache converts them into misses.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from focal_finops.core.models import Base, KeyValueEntry

logger = structlog.get_logger(__name__)


class SqlAlchemyKeyValueStore:
    """Namespaced blob store backed by the focal_kv_entries table.

    Args:
        engine: Async SQLAlchemy engine. The store does not own the engine
            unless it was created through ``from_url``.
    """

    def __init__(self, engine: AsyncEngine, owns_engine: bool = False) -> None:
        self._engine = engine
        self._owns_engine = owns_engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemyKeyValueStore":
        """Create a store with its own engine for the given database URL."""
        return cls(create_async_engine(database_url), owns_engine=True)

    async def create_schema(self) -> None:
        """Create the focal_ tables if they don't exist (idempotent)."""
        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("kv_store_schema_ready", url=str(self._engine.url))

    async def dispose(self) -> None:
        """Release pooled connections if this store owns its engine."""
        if self._owns_engine:
            await self._engine.dispose()

    async def get(self, namespace: str, key: str) -> bytes | None:
        async with self._session_factory() as session:
            entry = await session.get(KeyValueEntry, (namespace, key))
            return entry.blob if entry is not None else None

    async def set(self, namespace: str, key: str, blob: bytes) -> None:
        async with self._session_factory() as session, session.begin():
            await session.merge(
                KeyValueEntry(
                    namespace=namespace,
                    key=key,
                    blob=blob,
                    updated_at=datetime.now(tz=timezone.utc),
                )
            )

    async def delete(self, namespace: str, key: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.namespace == namespace,
                    KeyValueEntry.key == key,
                )
            )

    async def list_keys(self, namespace: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KeyValueEntry.key)
                .where(KeyValueEntry.namespace == namespace)
                .order_by(KeyValueEntry.key)
            )
            return list(result.scalars().all())


class InMemoryKeyValueStore:
    """Dict-backed IKeyValueStore. Contents are lost when the process exits."""

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, bytes]] = {}

    async def get(self, namespace: str, key: str) -> bytes | None:
        return self._namespaces.get(namespace, {}).get(key)

    async def set(self, namespace: str, key: str, blob: bytes) -> None:
        self._namespaces.setdefault(namespace, {})[key] = blob

    async def delete(self, namespace: str, key: str) -> None:
        self._namespaces.get(namespace, {}).pop(key, None)

    async def list_keys(self, namespace: str) -> list[str]:
        return sorted(self._namespaces.get(namespace, {}))


__all__ = ["InMemoryKeyValueStore", "SqlAlchemyKeyValueStore"]
