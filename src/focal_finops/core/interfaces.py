"""Abstract interfaces (Protocol classes) for the Focal FinOps services.

All services depend on these interfaces, not concrete implementations.
This enables dependency injection and test doubles without coupling to
SQLAlchemy, the filesystem or a particular SQL engine.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class StorageEstimate:
    """Quota and usage reported by a storage footprint, in bytes."""

    quota: int
    usage: int


@dataclass(frozen=True)
class FootprintFile:
    """A single file inside the local data footprint.

    Attributes:
        path: Path relative to the footprint root (POSIX separators).
        size: File size in bytes.
        last_modified: Last modification time (UTC).
    """

    path: str
    size: int
    last_modified: datetime


@runtime_checkable
class IQueryEngine(Protocol):
    """The analytical SQL engine that executes aggregate queries."""

    async def query(self, sql: str) -> list[dict[str, Any]]:
        """Execute a SQL statement and return rows as plain dicts."""
        ...


@runtime_checkable
class IKeyValueStore(Protocol):
    """Async, persistent, namespaced key to blob store."""

    async def get(self, namespace: str, key: str) -> bytes | None:
        """Return the blob stored under (namespace, key), or None."""
        ...

    async def set(self, namespace: str, key: str, blob: bytes) -> None:
        """Store a blob, replacing any previous value in one operation."""
        ...

    async def delete(self, namespace: str, key: str) -> None:
        """Delete a key. Deleting a missing key is not an error."""
        ...

    async def list_keys(self, namespace: str) -> list[str]:
        """List every key in a namespace."""
        ...


@runtime_checkable
class ILocalSettingsStore(Protocol):
    """Flat string-keyed document store (JSON text values, last write wins)."""

    def get_item(self, key: str) -> str | None:
        """Return the raw document text stored under key, or None."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Store raw document text under key."""
        ...

    def remove_item(self, key: str) -> None:
        """Remove key if present."""
        ...

    def keys(self) -> list[str]:
        """Return all stored keys."""
        ...


@runtime_checkable
class IStorageFootprint(Protocol):
    """The physical data footprint (data files, indexes, cache files).

    ``supports_enumeration`` is the feature-detection flag: when False the
    footprint cannot list or size its contents and callers fall back to
    coarse estimates.
    """

    supports_enumeration: bool

    async def estimate(self) -> StorageEstimate | None:
        """Return quota and usage, or None when the platform cannot report them."""
        ...

    async def category_size(self, category: str) -> int:
        """Total bytes under a top-level category directory (0 if missing)."""
        ...

    async def list_files(self) -> list[FootprintFile]:
        """List every file in the footprint, recursively."""
        ...

    async def remove_file(self, path: str) -> None:
        """Delete a single file by its footprint-relative path."""
        ...

    async def clear(self) -> int:
        """Delete every entry in the footprint. Returns the number of top-level entries removed."""
        ...
