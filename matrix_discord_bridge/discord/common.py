from __future__ import annotations

from typing import Any, Mapping

import discord

from ..core.content import ZERO_WIDTH_SPACE, clamp_length
from ..core.errors import MalformedIdentityError
from ..core.models import DISCORD, Author, MessageIdentity, QuotedMessage


DISCORD_MESSAGE_LIMIT = 2000
WEBHOOK_USERNAME_LIMIT = 80
PERMALINK_BASE = "https://discord.com/channels"
CDN_BASE = "https://cdn.discordapp.com"
# Discord rejects webhook usernames containing these words.
_FORBIDDEN_USERNAME_WORDS = ("discord", "clyde")


def snowflake(value: object, what: str = "id") -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise MalformedIdentityError(f"Discord {what} is not a snowflake: {value!r}") from None
    if parsed <= 0:
        raise MalformedIdentityError(f"Discord {what} is not a snowflake: {value!r}")
    return parsed


def message_identity(message_id: int, channel_id: int, guild_id: int | None) -> MessageIdentity:
    return MessageIdentity(
        service=DISCORD,
        server_id=str(guild_id) if guild_id else "",
        room_id=str(channel_id),
        id=str(message_id),
    )


def permalink(identity: MessageIdentity) -> str:
    guild = identity.server_id or "@me"
    return f"{PERMALINK_BASE}/{guild}/{identity.room_id}/{identity.id}"


def user_tag(username: str, discriminator: str | None) -> str:
    if discriminator and discriminator != "0":
        return f"{username}#{discriminator}"
    return username


def author_from_user(user: discord.abc.User) -> Author:
    avatar = getattr(user, "display_avatar", None)
    return Author(
        source=DISCORD,
        id=str(user.id),
        ping_token=f"<@{user.id}>",
        tag=user_tag(user.name, getattr(user, "discriminator", None)),
        display_name=getattr(user, "display_name", None) or user.name,
        avatar_ref=str(avatar.url) if avatar is not None else None,
    )


def author_from_payload(author: Mapping[str, Any], member: Mapping[str, Any] | None = None) -> Author:
    user_id = str(author.get("id") or "")
    username = str(author.get("username") or "unknown")
    display = (member or {}).get("nick") or author.get("global_name") or username
    avatar_hash = author.get("avatar")
    avatar_url = f"{CDN_BASE}/avatars/{user_id}/{avatar_hash}.png" if avatar_hash and user_id else None
    return Author(
        source=DISCORD,
        id=user_id,
        ping_token=f"<@{user_id}>",
        tag=user_tag(username, author.get("discriminator")),
        display_name=str(display),
        avatar_ref=avatar_url,
    )


def quoted_from_message(message: discord.Message, guild_id: int | None) -> QuotedMessage:
    # Relayed copies are webhook messages; quote their spoofed name, not the webhook id.
    if message.webhook_id is not None:
        ping = message.author.name
    else:
        ping = f"<@{message.author.id}>"
    return QuotedMessage(
        identity=message_identity(message.id, message.channel.id, guild_id),
        author_ping=ping,
        body=message.content or "",
    )


def quoted_from_payload(data: Mapping[str, Any], channel_id: int, guild_id: int | None) -> QuotedMessage:
    author = data.get("author") or {}
    if data.get("webhook_id"):
        ping = str(author.get("username") or "")
    else:
        ping = f"<@{author.get('id')}>" if author.get("id") else ""
    return QuotedMessage(
        identity=message_identity(snowflake(data.get("id"), "message id"), channel_id, guild_id),
        author_ping=ping,
        body=str(data.get("content") or ""),
    )


def webhook_username(label: str) -> str:
    name = label.strip() or "unknown"
    for word in _FORBIDDEN_USERNAME_WORDS:
        lowered = name.lower()
        start = lowered.find(word)
        while start != -1:
            cut = start + 1
            name = f"{name[:cut]}{ZERO_WIDTH_SPACE}{name[cut:]}"
            lowered = name.lower()
            start = lowered.find(word, cut + 1)
    return clamp_length(name, WEBHOOK_USERNAME_LIMIT)
