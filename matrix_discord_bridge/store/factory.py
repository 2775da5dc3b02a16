from __future__ import annotations

from pathlib import Path
from typing import Any

from .store import CorrelationStore

BACKENDS = ("sqlite", "postgres")


def build_correlation_store(sqlite_path: Path, backend: str = "sqlite", postgres_dsn: str = "") -> Any:
    """Open the correlation store for `backend` (see `Settings.correlation_backend`)."""
    if backend == "sqlite":
        return CorrelationStore(sqlite_path)
    if backend != "postgres":
        raise ValueError(f"CORRELATION_BACKEND must be one of {', '.join(BACKENDS)}, got {backend!r}")
    if not postgres_dsn:
        raise ValueError("CORRELATION_POSTGRES_DSN is required when CORRELATION_BACKEND=postgres")

    from .postgres_store import PostgresCorrelationStore

    return PostgresCorrelationStore(postgres_dsn)
