"""Local settings stores: flat string-keyed JSON documents.

Plays the role a browser's localStorage plays for the dashboard: small
whole-document blobs (``storageSettings``, ``anomalyCache``,
``currencySettings``) written last-write-wins with no schema migration.

``load_document`` makes the merge-with-defaults rule explicit: every field of
the pydantic document model has a default, stored fields are shallow-merged
over those defaults, and unreadable documents fall back to the defaults.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from focal_finops.core.interfaces import ILocalSettingsStore

logger = structlog.get_logger(__name__)

DocumentT = TypeVar("DocumentT", bound=BaseModel)


class InMemorySettingsStore:
    """ILocalSettingsStore kept in a dict (tests and ephemeral mode)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class JsonFileSettingsStore:
    """ILocalSettingsStore persisted as one JSON object in a file.

    The whole file is rewritten on every change through a temporary file and
    ``os.replace`` so a crash never leaves a half-written document.

    Args:
        path: Location of the JSON file. Parent directories are created.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._items: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("settings_file_unreadable", path=str(self._path), error=str(exc))
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".focal-settings-")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(self._items, handle, indent=2, sort_keys=True)
        os.replace(tmp_path, self._path)

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def keys(self) -> list[str]:
        return list(self._items)


def load_document(
    store: ILocalSettingsStore,
    key: str,
    model: type[DocumentT],
) -> DocumentT:
    """Load a settings document, shallow-merging stored fields over defaults.

    Args:
        store: Settings store to read from.
        key: Document key.
        model: Pydantic model whose fields all carry defaults.

    Returns:
        A fully populated document. Missing, malformed or invalid documents
        yield ``model()``.
    """
    defaults = model()
    raw = store.get_item(key)
    if raw is None:
        return defaults

    try:
        stored = json.loads(raw)
        if not isinstance(stored, dict):
            raise ValueError("document is not a JSON object")
        return model.model_validate({**defaults.model_dump(), **stored})
    except (ValueError, ValidationError) as exc:
        logger.warning("settings_document_invalid", key=key, error=str(exc))
        return defaults


def save_document(store: ILocalSettingsStore, key: str, document: BaseModel) -> None:
    """Persist a settings document as a whole JSON blob."""
    store.set_item(key, document.model_dump_json())


__all__ = [
    "InMemorySettingsStore",
    "JsonFileSettingsStore",
    "load_document",
    "save_document",
]
