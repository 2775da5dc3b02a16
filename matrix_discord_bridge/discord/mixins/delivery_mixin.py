from __future__ import annotations

import logging

import discord

from ...core.content import clamp_length
from ...core.errors import DeliveryError
from ...core.models import DISCORD, Destination, MessageIdentity
from ..common import DISCORD_MESSAGE_LIMIT, message_identity, snowflake, webhook_username
from ..common import permalink as message_permalink

logger = logging.getLogger("matrix_discord_bridge")


class DeliveryMixin:
    """Outbound half of the Discord adapter: relays go out through channel webhooks."""

    service = DISCORD

    async def deliver(
        self,
        destination: Destination,
        content: str,
        *,
        display_override: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageIdentity:
        channel_id = snowflake(destination.room_id, "channel id")
        webhook = await self._get_webhook(channel_id)
        try:
            sent = await webhook.send(
                content=clamp_length(content, DISCORD_MESSAGE_LIMIT),
                username=webhook_username(display_override) if display_override else discord.utils.MISSING,
                avatar_url=avatar_url or discord.utils.MISSING,
                allowed_mentions=discord.AllowedMentions.none(),
                wait=True,
            )
        except discord.NotFound as exc:
            # Webhook was deleted behind our back; the next send recreates it.
            await self._forget_webhook(channel_id)
            raise DeliveryError(DISCORD, "send", f"webhook for channel {channel_id} is gone") from exc
        except discord.HTTPException as exc:
            raise DeliveryError(DISCORD, "send", str(exc)) from exc

        guild_id = int(destination.server_id) if destination.server_id else None
        return message_identity(sent.id, channel_id, guild_id)

    async def deliver_edit(
        self,
        target: MessageIdentity,
        content: str,
        *,
        display_override: str | None = None,
    ) -> None:
        channel_id = snowflake(target.room_id, "channel id")
        message_id = snowflake(target.id, "message id")
        webhook = await self._get_webhook(channel_id)
        try:
            await webhook.edit_message(
                message_id,
                content=clamp_length(content, DISCORD_MESSAGE_LIMIT),
                allowed_mentions=discord.AllowedMentions.none(),
            )
        except discord.HTTPException as exc:
            raise DeliveryError(DISCORD, "edit", str(exc)) from exc

    async def deliver_delete(self, target: MessageIdentity) -> None:
        channel_id = snowflake(target.room_id, "channel id")
        message_id = snowflake(target.id, "message id")
        channel = self.get_partial_messageable(channel_id)
        try:
            await channel.get_partial_message(message_id).delete()
        except discord.NotFound:
            logger.debug("Discord message %s already gone", target)
        except discord.Forbidden:
            # Without Manage Messages the webhook can still remove its own posts.
            webhook = self.webhooks.get(channel_id)
            if webhook is None:
                raise
            await webhook.delete_message(message_id)

    def permalink(self, identity: MessageIdentity) -> str | None:
        if identity.service != DISCORD:
            return None
        return message_permalink(identity)
