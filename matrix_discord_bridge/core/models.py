from __future__ import annotations

from dataclasses import dataclass

from .content import display_label

DISCORD = "discord"
MATRIX = "matrix"


@dataclass(frozen=True, slots=True)
class MessageIdentity:
    service: str
    server_id: str
    room_id: str
    id: str

    def as_row(self) -> tuple[str, str, str, str]:
        return (self.service, self.server_id, self.room_id, self.id)

    @classmethod
    def from_row(cls, row: object) -> "MessageIdentity":
        service, server_id, room_id, message_id = tuple(row)[:4]  # type: ignore[arg-type]
        return cls(
            service=str(service),
            server_id=str(server_id or ""),
            room_id=str(room_id),
            id=str(message_id),
        )

    def __str__(self) -> str:
        server = self.server_id or "-"
        return f"{self.service}:{server}/{self.room_id}/{self.id}"


@dataclass(slots=True)
class Author:
    source: str
    id: str
    ping_token: str
    tag: str
    display_name: str
    avatar_ref: str | None = None

    @property
    def label(self) -> str:
        return display_label(self.display_name, self.tag)


@dataclass(slots=True)
class QuotedMessage:
    """The message a reply points at, as its home adapter saw it."""

    identity: MessageIdentity
    author_ping: str
    body: str


@dataclass(slots=True)
class IncomingMessage:
    identity: MessageIdentity
    author: Author
    body: str
    reply_to: MessageIdentity | None = None
    quoted: QuotedMessage | None = None


# Edits carry the same payload; `identity` is the edited origin message.
IncomingEdit = IncomingMessage


@dataclass(frozen=True, slots=True)
class Destination:
    service: str
    server_id: str
    room_id: str


@dataclass(frozen=True, slots=True)
class RoomPair:
    matrix_room_id: str
    discord_channel_id: int
    discord_guild_id: int
