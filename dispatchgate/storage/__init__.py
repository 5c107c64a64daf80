from __future__ import annotations

from dispatchgate.config import DispatchSettings
from dispatchgate.storage.base import StorageBackend
from dispatchgate.storage.postgres_impl import PostgresStorageBackend
from dispatchgate.storage.sqlite_impl import SQLiteStorageBackend


def create_storage_backend(settings: DispatchSettings) -> StorageBackend:
    backend = (settings.storage_backend or "sqlite").strip().lower()
    if backend == "postgres":
        return PostgresStorageBackend(settings.postgres_dsn)
    return SQLiteStorageBackend(settings.db_path)


__all__ = [
    "PostgresStorageBackend",
    "SQLiteStorageBackend",
    "StorageBackend",
    "create_storage_backend",
]
