from __future__ import annotations

import asyncio
from collections import OrderedDict
from pathlib import Path

import aiosqlite

from ...core.models import MessageIdentity
from .utils import _env_flag, _open_sqlite_connection


class CorrelationSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None
        # Every read or write goes through this lock, one connection behind it.
        self._lock = asyncio.Lock()
        self._tombstones: OrderedDict[MessageIdentity, None] = OrderedDict()

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        return _env_flag("CORRELATION_SQLITE_RESET_ON_SCHEMA_MISMATCH")

    def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Correlation store is not initialized; call init() first")
        return self._db

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with self._lock:
            if self._db is None:
                self._db = await _open_sqlite_connection(self.db_path)
            db = self._db
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                await self._close_locked()
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this bridge build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set CORRELATION_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("messages", "discord_webhooks"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                service_org TEXT NOT NULL,
                server_id_org TEXT NOT NULL DEFAULT '',
                room_id_org TEXT NOT NULL,
                id_org TEXT NOT NULL,
                service_out TEXT NOT NULL,
                server_id_out TEXT NOT NULL DEFAULT '',
                room_id_out TEXT NOT NULL,
                id_out TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (
                    service_org, server_id_org, room_id_org, id_org,
                    service_out, server_id_out, room_id_out, id_out
                )
            );

            CREATE INDEX IF NOT EXISTS idx_messages_origin
            ON messages(service_org, server_id_org, room_id_org, id_org);

            CREATE INDEX IF NOT EXISTS idx_messages_relayed
            ON messages(service_out, server_id_out, room_id_out, id_out);

            CREATE TABLE IF NOT EXISTS discord_webhooks (
                channel_id TEXT PRIMARY KEY,
                webhook_id TEXT NOT NULL,
                webhook_token TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
