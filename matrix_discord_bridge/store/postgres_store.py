from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..core.errors import StoreConsistencyError
from ..core.models import MessageIdentity
from .storage.correlations import TombstoneMixin, _single_origin
from .storage.utils import _identity_params
from .storage.webhooks import WebhookCredentials


logger = logging.getLogger("matrix_discord_bridge")

_ORG_MATCH = "service_org = $1 AND server_id_org = $2 AND room_id_org = $3 AND id_org = $4"
_OUT_MATCH = "service_out = $1 AND server_id_out = $2 AND room_id_out = $3 AND id_out = $4"


class PostgresCorrelationStore(TombstoneMixin):
    """Postgres-backed correlation store implementing the same API as CorrelationStore."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("CORRELATION_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._lock = asyncio.Lock()
        self._initialized = False
        self._tombstones: OrderedDict[MessageIdentity, None] = OrderedDict()

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres correlation backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=4,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
            self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres correlation schema version {version} is newer than supported "
                            f"{self.SCHEMA_VERSION}. Upgrade the bridge before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("Postgres correlation store ready (schema v%s)", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bridge_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM bridge_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO bridge_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                row_id BIGSERIAL PRIMARY KEY,
                service_org TEXT NOT NULL,
                server_id_org TEXT NOT NULL DEFAULT '',
                room_id_org TEXT NOT NULL,
                id_org TEXT NOT NULL,
                service_out TEXT NOT NULL,
                server_id_out TEXT NOT NULL DEFAULT '',
                room_id_out TEXT NOT NULL,
                id_out TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
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
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )

    async def record(self, origin: MessageIdentity, relayed: MessageIdentity) -> bool:
        async with self._lock:
            if self._is_tombstoned(origin, relayed):
                return False
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await self._select_origins(conn, relayed)
                    conflicting = [row for row in existing if row != origin]
                    if conflicting:
                        raise StoreConsistencyError(
                            f"{relayed} is already recorded as a relay of {conflicting[0]}; "
                            f"refusing to link it to {origin}"
                        )
                    await conn.execute(
                        """
                        INSERT INTO messages (
                            service_org, server_id_org, room_id_org, id_org,
                            service_out, server_id_out, room_id_out, id_out
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        ON CONFLICT DO NOTHING
                        """,
                        *_identity_params(origin),
                        *_identity_params(relayed),
                    )
            return True

    async def find_origin(self, relayed: MessageIdentity) -> MessageIdentity | None:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                origins = await self._select_origins(conn, relayed)
            return _single_origin(relayed, origins)

    async def find_relays(self, origin: MessageIdentity) -> list[MessageIdentity]:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                return await self._select_relays(conn, origin)

    async def counterparts(
        self,
        identity: MessageIdentity,
    ) -> tuple[list[MessageIdentity], MessageIdentity | None]:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    relays = await self._select_relays(conn, identity)
                    origins = await self._select_origins(conn, identity)
            return relays, _single_origin(identity, origins)

    async def delete(self, identity: MessageIdentity) -> int:
        async with self._lock:
            self._remember_tombstone(identity)
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                status = await conn.execute(
                    f"DELETE FROM messages WHERE ({_ORG_MATCH}) OR ({_OUT_MATCH})",
                    *_identity_params(identity),
                )
        # asyncpg returns the command tag, e.g. "DELETE 2".
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    async def count(self) -> int:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                value = await conn.fetchval("SELECT COUNT(*) FROM messages")
        return int(value or 0)

    async def get_webhook(self, channel_id: int | str) -> WebhookCredentials | None:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT channel_id, webhook_id, webhook_token FROM discord_webhooks WHERE channel_id = $1",
                    str(channel_id),
                )
        if row is None:
            return None
        return WebhookCredentials(
            channel_id=str(row["channel_id"]),
            webhook_id=int(row["webhook_id"]),
            token=str(row["webhook_token"]),
        )

    async def save_webhook(self, channel_id: int | str, webhook_id: int, token: str) -> None:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO discord_webhooks (channel_id, webhook_id, webhook_token)
                    VALUES ($1, $2, $3)
                    ON CONFLICT(channel_id) DO UPDATE SET
                        webhook_id = EXCLUDED.webhook_id,
                        webhook_token = EXCLUDED.webhook_token,
                        created_at = NOW()
                    """,
                    str(channel_id),
                    str(int(webhook_id)),
                    token,
                )

    async def forget_webhook(self, channel_id: int | str) -> None:
        async with self._lock:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.execute("DELETE FROM discord_webhooks WHERE channel_id = $1", str(channel_id))

    @staticmethod
    async def _select_origins(conn: "asyncpg.Connection", relayed: MessageIdentity) -> list[MessageIdentity]:
        rows = await conn.fetch(
            f"""
            SELECT service_org, server_id_org, room_id_org, id_org
            FROM messages
            WHERE {_OUT_MATCH}
            ORDER BY row_id
            """,
            *_identity_params(relayed),
        )
        return [MessageIdentity.from_row(row) for row in rows]

    @staticmethod
    async def _select_relays(conn: "asyncpg.Connection", origin: MessageIdentity) -> list[MessageIdentity]:
        rows = await conn.fetch(
            f"""
            SELECT service_out, server_id_out, room_id_out, id_out
            FROM messages
            WHERE {_ORG_MATCH}
            ORDER BY row_id
            """,
            *_identity_params(origin),
        )
        return [MessageIdentity.from_row(row) for row in rows]
