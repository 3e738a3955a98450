from __future__ import annotations

from typing import Any

from ..config import Settings
from .store import MemoryStore


def build_memory_store(settings: Settings) -> Any:
    backend = settings.memory_backend
    if backend == "sqlite":
        return MemoryStore(
            settings.sqlite_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            reset_on_schema_mismatch=settings.sqlite_reset_on_schema_mismatch,
        )
    if backend != "postgres":
        raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
    if not settings.postgres_dsn:
        raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

    from .postgres_store import PostgresMemoryStore

    return PostgresMemoryStore(settings.postgres_dsn)
