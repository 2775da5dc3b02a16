from __future__ import annotations

import re
from typing import Any, Mapping

from ..core.content import ZERO_WIDTH_SPACE, sanitize_mentions
from ..core.errors import MalformedIdentityError
from ..core.models import MATRIX, Author, MessageIdentity, QuotedMessage

MATRIX_TO_BASE = "https://matrix.to/#"
REL_REPLACE = "m.replace"
# Relays sent by the bridge account carry their author in a bold prefix.
ATTRIBUTION_RE = re.compile(r"^\*\*(?P<label>[^\n]+?):\*\*[ \n]?")


def matrix_identity(room_id: str, event_id: str) -> MessageIdentity:
    room = str(room_id or "").strip()
    event = str(event_id or "").strip()
    if not room.startswith("!") or ":" not in room:
        raise MalformedIdentityError(f"Matrix room id is malformed: {room_id!r}")
    if not event.startswith("$") or len(event) < 2:
        raise MalformedIdentityError(f"Matrix event id is malformed: {event_id!r}")
    return MessageIdentity(service=MATRIX, server_id="", room_id=room, id=event)


def localpart(user_id: str) -> str:
    return user_id.split(":", 1)[0].lstrip("@")


def is_puppet(user_id: str, puppet_prefix: str) -> bool:
    return bool(puppet_prefix) and localpart(user_id).startswith(puppet_prefix)


def find_ping(user_id: str, puppet_prefix: str = "") -> str:
    """Ping token for a Matrix user as Discord should see it.

    Puppets of the Discord side (`@{prefix}{discord_id}:server`) map back to a
    real Discord mention; everyone else keeps their bare mxid.
    """
    user = user_id.strip().lstrip("<").rstrip(">")
    if is_puppet(user, puppet_prefix):
        discord_id = localpart(user)[len(puppet_prefix):]
        if discord_id.isdigit():
            return f"<@{discord_id}>"
    return user


def permalink(identity: MessageIdentity) -> str:
    return f"{MATRIX_TO_BASE}/{identity.room_id}/{identity.id}"


def mxc_to_http(mxc: str | None, homeserver: str) -> str | None:
    if not mxc or not mxc.startswith("mxc://"):
        return None
    server_and_media = mxc[len("mxc://"):]
    if "/" not in server_and_media:
        return None
    return f"{homeserver.rstrip('/')}/_matrix/media/v3/download/{server_and_media}"


def attribute(label: str | None, body: str) -> str:
    if not label:
        return body
    label = sanitize_mentions(label)
    if body.startswith(">"):
        # Keep a leading reply quote on its own line so it still renders.
        return f"**{label}:**\n{body}"
    return f"**{label}:** {body}"


def split_attribution(body: str) -> tuple[str | None, str]:
    match = ATTRIBUTION_RE.match(body)
    if match is None:
        return None, body
    # Stored labels are mention-broken; hand back the plain one.
    label = match.group("label").replace(f"@{ZERO_WIDTH_SPACE}", "@")
    return label, body[match.end():]


def relates_to(source: Mapping[str, Any]) -> Mapping[str, Any]:
    content = source.get("content") or {}
    relation = content.get("m.relates_to") or {}
    return relation if isinstance(relation, Mapping) else {}


def reply_target(source: Mapping[str, Any]) -> str | None:
    in_reply_to = relates_to(source).get("m.in_reply_to") or {}
    event_id = in_reply_to.get("event_id") if isinstance(in_reply_to, Mapping) else None
    return str(event_id) if event_id else None


def replace_target(source: Mapping[str, Any]) -> str | None:
    relation = relates_to(source)
    if relation.get("rel_type") != REL_REPLACE or not relation.get("event_id"):
        return None
    return str(relation["event_id"])


def replacement_body(source: Mapping[str, Any], fallback: str) -> str:
    content = source.get("content") or {}
    new_content = content.get("m.new_content") or {}
    body = new_content.get("body") if isinstance(new_content, Mapping) else None
    if isinstance(body, str):
        return body
    # Clients without m.new_content send "* new text" as the body.
    return fallback[2:] if fallback.startswith("* ") else fallback


def text_content(body: str) -> dict[str, Any]:
    return {"msgtype": "m.text", "body": body}


def edit_content(event_id: str, body: str) -> dict[str, Any]:
    return {
        "msgtype": "m.text",
        "body": f"* {body}",
        "m.new_content": text_content(body),
        "m.relates_to": {"rel_type": REL_REPLACE, "event_id": event_id},
    }


def author_from_member(user_id: str, display_name: str | None, avatar_url: str | None, puppet_prefix: str) -> Author:
    return Author(
        source=MATRIX,
        id=user_id,
        ping_token=find_ping(user_id, puppet_prefix),
        tag=user_id,
        display_name=display_name or localpart(user_id),
        avatar_ref=avatar_url,
    )


def quoted_from_event(
    room_id: str,
    source: Mapping[str, Any],
    *,
    own_user_id: str,
    puppet_prefix: str,
) -> QuotedMessage:
    content = source.get("content") or {}
    body = str(content.get("body") or "")
    sender = str(source.get("sender") or "")
    if sender == own_user_id:
        # A relay we posted: quote its original author, not the bridge account.
        label, body = split_attribution(body)
        ping = label or ""
    else:
        ping = find_ping(sender, puppet_prefix)
    return QuotedMessage(
        identity=matrix_identity(room_id, str(source.get("event_id") or "")),
        author_ping=ping,
        body=body,
    )
