from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping

from .adapter import PlatformAdapter
from .content import (
    build_reply_header,
    first_line,
    format_with_reply,
    sanitize_mentions,
    strip_quote_block,
)
from .errors import DeliveryError
from .models import Destination, IncomingMessage, MessageIdentity
from .routing import RoomRouter

if TYPE_CHECKING:
    from ..store.store import CorrelationStore

logger = logging.getLogger("matrix_discord_bridge")


class RelayPipeline:
    """Create path: route, rewrite, deliver, then record the correlation."""

    def __init__(
        self,
        store: "CorrelationStore",
        router: RoomRouter,
        adapters: Mapping[str, PlatformAdapter],
    ) -> None:
        self.store = store
        self.router = router
        self.adapters = adapters

    def adapter_for(self, service: str) -> PlatformAdapter:
        adapter = self.adapters.get(service)
        if adapter is None:
            raise DeliveryError(service, "route", "no adapter registered for this platform")
        return adapter

    async def resolve_anchor(
        self,
        reply_to: MessageIdentity,
        destination: Destination,
    ) -> MessageIdentity | None:
        # One hop only: a reply to a reply anchors on its direct target.
        relays, origin = await self.store.counterparts(reply_to)
        for relay in relays:
            if relay.service == destination.service:
                return relay
        if origin is not None and origin.service == destination.service:
            return origin
        return None

    async def compose(self, message: IncomingMessage, destination: Destination) -> str:
        body = message.body
        if message.reply_to is not None:
            if message.quoted is None:
                body = strip_quote_block(body)
            else:
                anchor = await self.resolve_anchor(message.reply_to, destination)
                link = None
                if anchor is not None:
                    link = self.adapter_for(destination.service).permalink(anchor)
                header = build_reply_header(
                    message.quoted.author_ping,
                    first_line(message.quoted.body),
                    link,
                )
                body = format_with_reply(body, header)
        return sanitize_mentions(body)

    async def relay(self, message: IncomingMessage) -> MessageIdentity | None:
        destination = self.router.destination_for(message.identity)
        if destination is None:
            logger.debug("No room pairing for %s; not bridged", message.identity)
            return None

        adapter = self.adapter_for(destination.service)
        content = await self.compose(message, destination)
        relayed = await adapter.deliver(
            destination,
            content,
            display_override=message.author.label,
            avatar_url=message.author.avatar_ref,
        )

        if not await self.store.record(message.identity, relayed):
            logger.info("Origin %s was deleted mid-relay; removing %s", message.identity, relayed)
            try:
                await adapter.deliver_delete(relayed)
            except Exception as exc:
                logger.debug("Cleanup delete of %s ignored: %s", relayed, exc)
            return None

        logger.info("Relayed %s -> %s", message.identity, relayed)
        return relayed
