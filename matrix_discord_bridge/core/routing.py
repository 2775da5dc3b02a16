from __future__ import annotations

from typing import Iterable

from .models import DISCORD, MATRIX, Destination, MessageIdentity, RoomPair


class RoomRouter:
    """Static Matrix room <-> Discord channel pairing, consulted by identity only."""

    def __init__(self, pairs: Iterable[RoomPair]) -> None:
        self.pairs: tuple[RoomPair, ...] = tuple(pairs)
        self._by_matrix: dict[str, RoomPair] = {}
        self._by_discord: dict[str, RoomPair] = {}
        # First entry wins when the table lists a room twice.
        for pair in self.pairs:
            self._by_matrix.setdefault(pair.matrix_room_id, pair)
            self._by_discord.setdefault(str(pair.discord_channel_id), pair)

    def is_bridged(self, service: str, room_id: str) -> bool:
        if service == MATRIX:
            return room_id in self._by_matrix
        if service == DISCORD:
            return str(room_id) in self._by_discord
        return False

    def destination_for(self, identity: MessageIdentity) -> Destination | None:
        if identity.service == MATRIX:
            pair = self._by_matrix.get(identity.room_id)
            if pair is None:
                return None
            return Destination(
                service=DISCORD,
                server_id=str(pair.discord_guild_id),
                room_id=str(pair.discord_channel_id),
            )
        if identity.service == DISCORD:
            pair = self._by_discord.get(identity.room_id)
            if pair is None:
                return None
            return Destination(service=MATRIX, server_id="", room_id=pair.matrix_room_id)
        return None

    def matrix_rooms(self) -> list[str]:
        return list(self._by_matrix)

    def discord_channels(self) -> list[int]:
        return [pair.discord_channel_id for pair in self._by_discord.values()]
