"""Local data directory footprint for the Focal storage controller.

The data directory holds the billing data files, index files and cache files
the query engine reads. Top-level subdirectories are the storage categories:

    billing-data/   parquet exports
    indexes/        engine index files
    cache/          derived cache files

All filesystem work runs in a worker thread (asyncio.to_thread) so the event
loop is never blocked by a directory walk.
"""

from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timezone
from pathlib import Path

import structlog

from focal_finops.core.interfaces import FootprintFile, StorageEstimate

logger = structlog.get_logger(__name__)

BILLING_DATA_DIR = "billing-data"
INDEXES_DIR = "indexes"
CACHE_DIR = "cache"


def _directory_size(path: Path) -> int:
    if not path.is_dir():
        return 0
    total = 0
    for child in path.rglob("*"):
        try:
            if child.is_file():
                total += child.stat().st_size
        except OSError as exc:
            logger.warning("footprint_stat_failed", path=str(child), error=str(exc))
    return total


class LocalDirectoryFootprint:
    """IStorageFootprint over a directory on the local filesystem.

    Args:
        root: Footprint root directory (created on demand).
        quota_bytes: Fixed quota to report. None uses the total size of the
            disk holding the root directory.
    """

    supports_enumeration = True

    def __init__(self, root: str | Path, quota_bytes: int | None = None) -> None:
        self._root = Path(root)
        self._quota_bytes = quota_bytes

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, relative_path: str) -> Path:
        candidate = (self._root / relative_path).resolve()
        if self._root.resolve() not in candidate.parents:
            raise ValueError(f"Path escapes footprint root: {relative_path}")
        return candidate

    def _estimate_sync(self) -> StorageEstimate:
        self._root.mkdir(parents=True, exist_ok=True)
        quota = self._quota_bytes if self._quota_bytes is not None else shutil.disk_usage(self._root).total
        return StorageEstimate(quota=int(quota), usage=_directory_size(self._root))

    async def estimate(self) -> StorageEstimate | None:
        return await asyncio.to_thread(self._estimate_sync)

    async def category_size(self, category: str) -> int:
        return await asyncio.to_thread(_directory_size, self._root / category)

    def _list_files_sync(self) -> list[FootprintFile]:
        if not self._root.is_dir():
            return []
        files: list[FootprintFile] = []
        for path in sorted(self._root.rglob("*")):
            if not path.is_file():
                continue
            stat = path.stat()
            files.append(
                FootprintFile(
                    path=path.relative_to(self._root).as_posix(),
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return files

    async def list_files(self) -> list[FootprintFile]:
        return await asyncio.to_thread(self._list_files_sync)

    async def remove_file(self, path: str) -> None:
        await asyncio.to_thread(self._resolve(path).unlink)

    def _clear_sync(self) -> int:
        if not self._root.is_dir():
            return 0
        removed = 0
        for entry in list(self._root.iterdir()):
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("footprint_entry_remove_failed", entry=entry.name, error=str(exc))
        return removed

    async def clear(self) -> int:
        return await asyncio.to_thread(self._clear_sync)


class UnsupportedFootprint:
    """IStorageFootprint for platforms without quota or directory access.

    Every query reports "unknown"; the storage controller falls back to its
    coarse estimates.
    """

    supports_enumeration = False

    async def estimate(self) -> StorageEstimate | None:
        return None

    async def category_size(self, category: str) -> int:
        return 0

    async def list_files(self) -> list[FootprintFile]:
        return []

    async def remove_file(self, path: str) -> None:
        raise NotImplementedError("Footprint does not support file removal")

    async def clear(self) -> int:
        return 0


__all__ = [
    "BILLING_DATA_DIR",
    "CACHE_DIR",
    "INDEXES_DIR",
    "LocalDirectoryFootprint",
    "UnsupportedFootprint",
]
