from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class WebhookCredentials:
    channel_id: str
    webhook_id: int
    token: str


class WebhookCacheMixin:
    async def get_webhook(self, channel_id: int | str) -> WebhookCredentials | None:
        async with self._lock:
            async with self._connection().execute(
                """
                SELECT channel_id, webhook_id, webhook_token
                FROM discord_webhooks
                WHERE channel_id = ?
                """,
                (str(channel_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return WebhookCredentials(channel_id=str(row[0]), webhook_id=int(row[1]), token=str(row[2]))

    async def save_webhook(self, channel_id: int | str, webhook_id: int, token: str) -> None:
        async with self._lock:
            db = self._connection()
            await db.execute(
                """
                INSERT INTO discord_webhooks (channel_id, webhook_id, webhook_token)
                VALUES (?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    webhook_id = excluded.webhook_id,
                    webhook_token = excluded.webhook_token,
                    created_at = CURRENT_TIMESTAMP
                """,
                (str(channel_id), str(int(webhook_id)), token),
            )
            await db.commit()

    async def forget_webhook(self, channel_id: int | str) -> None:
        async with self._lock:
            db = self._connection()
            await db.execute("DELETE FROM discord_webhooks WHERE channel_id = ?", (str(channel_id),))
            await db.commit()
