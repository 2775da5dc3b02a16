from __future__ import annotations

import logging

import aiosqlite

from ...core.errors import StoreConsistencyError
from ...core.models import MessageIdentity
from .utils import IDENTITY_COLUMNS_ORG, IDENTITY_COLUMNS_OUT, _identity_params, _match_clause

logger = logging.getLogger("matrix_discord_bridge")


class TombstoneMixin:
    TOMBSTONE_LIMIT = 4096

    def _remember_tombstone(self, identity: MessageIdentity) -> None:
        self._tombstones[identity] = None
        self._tombstones.move_to_end(identity)
        while len(self._tombstones) > self.TOMBSTONE_LIMIT:
            self._tombstones.popitem(last=False)

    def _is_tombstoned(self, *identities: MessageIdentity) -> bool:
        return any(identity in self._tombstones for identity in identities)


def _single_origin(relayed: MessageIdentity, origins: list[MessageIdentity]) -> MessageIdentity | None:
    if not origins:
        return None
    if len(origins) > 1:
        logger.error("Correlation store holds %s origins for %s", len(origins), relayed)
        raise StoreConsistencyError(f"{relayed} has {len(origins)} origins recorded; expected at most one")
    return origins[0]


class CorrelationRecordsMixin(TombstoneMixin):
    async def record(self, origin: MessageIdentity, relayed: MessageIdentity) -> bool:
        """Link `relayed` to `origin`. Returns False if either side is already deleted."""
        async with self._lock:
            db = self._connection()
            if self._is_tombstoned(origin, relayed):
                return False

            existing = await self._select_origins(db, relayed)
            conflicting = [row for row in existing if row != origin]
            if conflicting:
                raise StoreConsistencyError(
                    f"{relayed} is already recorded as a relay of {conflicting[0]}; refusing to link it to {origin}"
                )

            await db.execute(
                f"""
                INSERT OR IGNORE INTO messages (
                    {", ".join(IDENTITY_COLUMNS_ORG)},
                    {", ".join(IDENTITY_COLUMNS_OUT)}
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*_identity_params(origin), *_identity_params(relayed)),
            )
            await db.commit()
            return True

    async def find_origin(self, relayed: MessageIdentity) -> MessageIdentity | None:
        async with self._lock:
            return _single_origin(relayed, await self._select_origins(self._connection(), relayed))

    async def find_relays(self, origin: MessageIdentity) -> list[MessageIdentity]:
        async with self._lock:
            return await self._select_relays(self._connection(), origin)

    async def counterparts(
        self,
        identity: MessageIdentity,
    ) -> tuple[list[MessageIdentity], MessageIdentity | None]:
        """Relays of `identity` and its origin, read under one lock acquisition."""
        async with self._lock:
            db = self._connection()
            relays = await self._select_relays(db, identity)
            origin = _single_origin(identity, await self._select_origins(db, identity))
            return relays, origin

    async def delete(self, identity: MessageIdentity) -> int:
        async with self._lock:
            db = self._connection()
            self._remember_tombstone(identity)
            cursor = await db.execute(
                f"""
                DELETE FROM messages
                WHERE ({_match_clause(IDENTITY_COLUMNS_ORG)})
                   OR ({_match_clause(IDENTITY_COLUMNS_OUT)})
                """,
                (*_identity_params(identity), *_identity_params(identity)),
            )
            await db.commit()
            return max(0, int(cursor.rowcount or 0))

    async def count(self) -> int:
        async with self._lock:
            async with self._connection().execute("SELECT COUNT(*) FROM messages") as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    async def _select_origins(db: aiosqlite.Connection, relayed: MessageIdentity) -> list[MessageIdentity]:
        async with db.execute(
            f"""
            SELECT {", ".join(IDENTITY_COLUMNS_ORG)}
            FROM messages
            WHERE {_match_clause(IDENTITY_COLUMNS_OUT)}
            ORDER BY rowid
            """,
            _identity_params(relayed),
        ) as cursor:
            rows = await cursor.fetchall()
        return [MessageIdentity.from_row(row) for row in rows]

    @staticmethod
    async def _select_relays(db: aiosqlite.Connection, origin: MessageIdentity) -> list[MessageIdentity]:
        async with db.execute(
            f"""
            SELECT {", ".join(IDENTITY_COLUMNS_OUT)}
            FROM messages
            WHERE {_match_clause(IDENTITY_COLUMNS_ORG)}
            ORDER BY rowid
            """,
            _identity_params(origin),
        ) as cursor:
            rows = await cursor.fetchall()
        return [MessageIdentity.from_row(row) for row in rows]
