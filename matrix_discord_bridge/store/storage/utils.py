from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from ...core.models import MessageIdentity


IDENTITY_COLUMNS_ORG = ("service_org", "server_id_org", "room_id_org", "id_org")
IDENTITY_COLUMNS_OUT = ("service_out", "server_id_out", "room_id_out", "id_out")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("CORRELATION_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


async def _open_sqlite_connection(db_path: str | Path) -> aiosqlite.Connection:
    db = await aiosqlite.connect(db_path)
    await db.execute("PRAGMA foreign_keys=ON")
    timeout_ms = _sqlite_busy_timeout_ms()
    if timeout_ms > 0:
        await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
    return db


def _match_clause(columns: tuple[str, ...], placeholder: str = "?") -> str:
    return " AND ".join(f"{column} = {placeholder}" for column in columns)


def _identity_params(identity: MessageIdentity) -> tuple[str, str, str, str]:
    return (
        str(identity.service),
        str(identity.server_id or ""),
        str(identity.room_id),
        str(identity.id),
    )
