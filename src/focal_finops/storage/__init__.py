"""Local storage management: usage breakdown, retention cleanup and purge."""

from focal_finops.storage.controller import StorageController, StorageSettings

__all__ = ["StorageController", "StorageSettings"]
