from __future__ import annotations

import logging

import discord

from ...core.errors import DeliveryError
from ...core.models import DISCORD

logger = logging.getLogger("matrix_discord_bridge")


class WebhookMixin:
    """One bridge-owned webhook per paired channel: memory, then store, then Discord."""

    async def _get_webhook(self, channel_id: int) -> discord.Webhook:
        cached = self.webhooks.get(channel_id)
        if cached is not None:
            return cached

        async with self.webhook_locks[channel_id]:
            cached = self.webhooks.get(channel_id)
            if cached is not None:
                return cached

            credentials = await self.store.get_webhook(channel_id)
            if credentials is not None:
                webhook = discord.Webhook.partial(credentials.webhook_id, credentials.token, client=self)
            else:
                webhook = await self._find_or_create_webhook(channel_id)
                await self.store.save_webhook(channel_id, webhook.id, webhook.token or "")
            self.webhooks[channel_id] = webhook
            return webhook

    async def _find_or_create_webhook(self, channel_id: int) -> discord.Webhook:
        try:
            channel = self.get_channel(channel_id) or await self.fetch_channel(channel_id)
            if not isinstance(channel, discord.TextChannel):
                raise DeliveryError(DISCORD, "webhook", f"channel {channel_id} does not support webhooks")

            for webhook in await channel.webhooks():
                owned = webhook.user is not None and self.user is not None and webhook.user.id == self.user.id
                if owned and webhook.token:
                    logger.info("Reusing webhook '%s' for channel %s", webhook.name, channel_id)
                    return webhook

            webhook = await channel.create_webhook(
                name=self.settings.discord_webhook_name,
                reason="Relay webhook for the Matrix bridge",
            )
        except discord.HTTPException as exc:
            raise DeliveryError(DISCORD, "webhook", f"channel {channel_id}: {exc}") from exc

        logger.info("Created webhook '%s' for channel %s", webhook.name, channel_id)
        return webhook

    async def _forget_webhook(self, channel_id: int) -> None:
        self.webhooks.pop(channel_id, None)
        try:
            await self.store.forget_webhook(channel_id)
        except Exception as exc:
            logger.warning("Failed to drop cached webhook for channel %s: %s", channel_id, exc)
