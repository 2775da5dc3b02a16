from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .adapter import PlatformAdapter
from .models import IncomingEdit, IncomingMessage, MessageIdentity
from .pipeline import RelayPipeline
from .propagation import DeletePropagator, EditPropagator
from .routing import RoomRouter

if TYPE_CHECKING:
    from ..store.store import CorrelationStore

logger = logging.getLogger("matrix_discord_bridge")


class RelayBridge:
    """Entry point the platform clients call with normalized events.

    The store is shared by every component; adapters register themselves once
    they are built and are looked up by `service` for outbound calls.
    """

    def __init__(self, store: "CorrelationStore", router: RoomRouter) -> None:
        self.store = store
        self.router = router
        self.adapters: dict[str, PlatformAdapter] = {}
        self.pipeline = RelayPipeline(store, router, self.adapters)
        self.edits = EditPropagator(self.pipeline)
        self.deletes = DeletePropagator(store, self.adapters)

    def register_adapter(self, adapter: PlatformAdapter) -> None:
        if adapter.service in self.adapters:
            raise ValueError(f"Adapter for {adapter.service!r} is already registered")
        self.adapters[adapter.service] = adapter
        logger.info("Registered %s adapter", adapter.service)

    def is_bridged(self, service: str, room_id: str) -> bool:
        return self.router.is_bridged(service, room_id)

    async def relay(self, message: IncomingMessage) -> MessageIdentity | None:
        return await self.pipeline.relay(message)

    async def propagate_edit(self, edit: IncomingEdit) -> int:
        return await self.edits.propagate(edit)

    async def propagate_delete(self, identity: MessageIdentity) -> int:
        return await self.deletes.propagate(identity)
