from __future__ import annotations

import contextlib
import logging
from typing import Any, Mapping

import discord

from ...core.errors import DeliveryError, MalformedIdentityError
from ...core.models import DISCORD, Author, IncomingEdit, IncomingMessage, MessageIdentity, QuotedMessage
from ..common import (
    author_from_payload,
    author_from_user,
    message_identity,
    quoted_from_message,
    quoted_from_payload,
    snowflake,
)

logger = logging.getLogger("matrix_discord_bridge")

_RELAYED_TYPES = (discord.MessageType.default, discord.MessageType.reply)


class RelayEventsMixin:
    """Inbound half of the Discord adapter: gateway events in, normalized events out."""

    def _is_own_traffic(self, author_id: int | None, webhook_id: int | None, is_bot: bool) -> bool:
        if webhook_id is not None or is_bot:
            return True
        return self.user is not None and author_id == self.user.id

    async def _fetch_quoted(self, channel_id: int, message_id: int, guild_id: int | None) -> QuotedMessage | None:
        cached = discord.utils.get(self.cached_messages, id=message_id)
        if cached is not None:
            return quoted_from_message(cached, guild_id)
        channel = self.get_partial_messageable(channel_id, guild_id=guild_id)
        try:
            referenced = await channel.fetch_message(message_id)
        except discord.HTTPException as exc:
            logger.debug("Could not fetch replied message %s: %s", message_id, exc)
            return None
        return quoted_from_message(referenced, guild_id)

    async def _reply_context(
        self,
        message: discord.Message,
    ) -> tuple[MessageIdentity | None, QuotedMessage | None]:
        reference = message.reference
        if reference is None or reference.message_id is None:
            return None, None

        # Referenced messages do not reliably carry the guild id; use the reply's.
        guild_id = message.guild.id if message.guild else None
        channel_id = reference.channel_id or message.channel.id
        reply_to = message_identity(reference.message_id, channel_id, guild_id)

        resolved = reference.resolved
        if isinstance(resolved, discord.Message):
            return reply_to, quoted_from_message(resolved, guild_id)
        if isinstance(resolved, discord.DeletedReferencedMessage):
            return reply_to, None
        return reply_to, await self._fetch_quoted(channel_id, reference.message_id, guild_id)

    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or message.type not in _RELAYED_TYPES:
            return
        if self._is_own_traffic(message.author.id, message.webhook_id, message.author.bot):
            return
        if not self.bridge.is_bridged(DISCORD, str(message.channel.id)):
            return
        if not message.content.strip():
            return

        reply_to, quoted = await self._reply_context(message)
        incoming = IncomingMessage(
            identity=message_identity(message.id, message.channel.id, message.guild.id),
            author=author_from_user(message.author),
            body=message.content,
            reply_to=reply_to,
            quoted=quoted,
        )
        try:
            await self.bridge.relay(incoming)
        except DeliveryError as exc:
            logger.warning("Relay of %s to Matrix failed: %s", incoming.identity, exc)
        except Exception as exc:
            logger.exception("Relay of %s aborted: %s", incoming.identity, exc)

    def _edit_author(self, payload: discord.RawMessageUpdateEvent, data: Mapping[str, Any]) -> Author | None:
        if payload.guild_id is not None:
            author_id = (data.get("author") or {}).get("id")
            guild = self.get_guild(payload.guild_id)
            if guild is not None and author_id:
                with contextlib.suppress(ValueError):
                    member = guild.get_member(int(author_id))
                    if member is not None:
                        return author_from_user(member)
        if data.get("author"):
            return author_from_payload(data["author"], data.get("member"))
        if payload.cached_message is not None:
            return author_from_user(payload.cached_message.author)
        return None

    async def _edit_reply_context(
        self,
        payload: discord.RawMessageUpdateEvent,
        data: Mapping[str, Any],
    ) -> tuple[MessageIdentity | None, QuotedMessage | None]:
        reference = data.get("message_reference") or {}
        if not reference.get("message_id"):
            return None, None
        channel_id = snowflake(reference.get("channel_id") or payload.channel_id, "channel id")
        message_id = snowflake(reference["message_id"], "message id")
        reply_to = message_identity(message_id, channel_id, payload.guild_id)

        referenced = data.get("referenced_message")
        if referenced:
            return reply_to, quoted_from_payload(referenced, channel_id, payload.guild_id)
        return reply_to, await self._fetch_quoted(channel_id, message_id, payload.guild_id)

    async def on_raw_message_edit(self, payload: discord.RawMessageUpdateEvent) -> None:
        data = payload.data
        if payload.guild_id is None or "content" not in data:
            return
        author_data = data.get("author") or {}
        author_id = int(author_data["id"]) if str(author_data.get("id", "")).isdigit() else None
        if self._is_own_traffic(author_id, data.get("webhook_id"), bool(author_data.get("bot"))):
            return
        if not self.bridge.is_bridged(DISCORD, str(payload.channel_id)):
            return
        # Embed unfurls also arrive as updates; only text changes matter.
        cached = payload.cached_message
        if cached is not None and cached.content == data.get("content"):
            return

        author = self._edit_author(payload, data)
        if author is None:
            logger.debug("Skipping edit of %s: author unknown", payload.message_id)
            return

        try:
            reply_to, quoted = await self._edit_reply_context(payload, data)
        except MalformedIdentityError as exc:
            logger.warning("Ignoring reply context of edited message %s: %s", payload.message_id, exc)
            reply_to, quoted = None, None

        edit = IncomingEdit(
            identity=message_identity(payload.message_id, payload.channel_id, payload.guild_id),
            author=author,
            body=str(data.get("content") or ""),
            reply_to=reply_to,
            quoted=quoted,
        )
        try:
            await self.bridge.propagate_edit(edit)
        except DeliveryError as exc:
            logger.warning("Edit of %s on Matrix failed: %s", edit.identity, exc)
        except Exception as exc:
            logger.exception("Edit propagation for %s aborted: %s", edit.identity, exc)

    async def _propagate_delete(self, identity: MessageIdentity) -> None:
        try:
            await self.bridge.propagate_delete(identity)
        except Exception as exc:
            logger.exception("Delete propagation for %s aborted: %s", identity, exc)

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        if payload.guild_id is None:
            return
        await self._propagate_delete(message_identity(payload.message_id, payload.channel_id, payload.guild_id))

    async def on_raw_bulk_message_delete(self, payload: discord.RawBulkMessageDeleteEvent) -> None:
        if payload.guild_id is None:
            return
        for message_id in sorted(payload.message_ids):
            await self._propagate_delete(message_identity(message_id, payload.channel_id, payload.guild_id))
