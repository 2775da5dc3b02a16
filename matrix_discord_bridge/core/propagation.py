from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Mapping

from .adapter import PlatformAdapter
from .errors import DeliveryError
from .models import IncomingEdit, MessageIdentity
from .pipeline import RelayPipeline

if TYPE_CHECKING:
    from ..store.store import CorrelationStore

logger = logging.getLogger("matrix_discord_bridge")


class EditPropagator:
    """Push an origin edit onto every relay of it on the counterpart platform.

    Edits made to a relayed copy are not propagated back.
    """

    def __init__(self, pipeline: RelayPipeline) -> None:
        self.pipeline = pipeline

    async def propagate(self, edit: IncomingEdit) -> int:
        destination = self.pipeline.router.destination_for(edit.identity)
        if destination is None:
            return 0

        relays = await self.pipeline.store.find_relays(edit.identity)
        targets = [relay for relay in relays if relay.service == destination.service]
        if not targets:
            return 0

        adapter = self.pipeline.adapter_for(destination.service)
        content = await self.pipeline.compose(edit, destination)

        edited = 0
        first_error: DeliveryError | None = None
        for target in targets:
            try:
                await adapter.deliver_edit(target, content, display_override=edit.author.label)
            except DeliveryError as exc:
                logger.warning("Edit of %s failed: %s", target, exc)
                if first_error is None:
                    first_error = exc
                continue
            edited += 1

        if first_error is not None:
            raise first_error
        logger.info("Propagated edit of %s to %s relay(s)", edit.identity, edited)
        return edited


class DeletePropagator:
    """Remove every counterpart of a deleted message, whichever side it was on."""

    def __init__(self, store: "CorrelationStore", adapters: Mapping[str, PlatformAdapter]) -> None:
        self.store = store
        self.adapters = adapters

    async def propagate(self, identity: MessageIdentity) -> int:
        relays, origin = await self.store.counterparts(identity)

        deleted = 0
        for relay in relays:
            deleted += await self._delete_remote(relay)
        if origin is not None:
            deleted += await self._delete_remote(origin)

        try:
            await self.store.delete(identity)
        except Exception as exc:
            logger.warning("Failed to drop correlation rows for %s: %s", identity, exc)

        if deleted:
            logger.info("Propagated delete of %s to %s message(s)", identity, deleted)
        return deleted

    async def _delete_remote(self, target: MessageIdentity) -> int:
        adapter = self.adapters.get(target.service)
        if adapter is None:
            logger.debug("No adapter for %s; skipping delete", target)
            return 0
        try:
            await adapter.deliver_delete(target)
        except Exception as exc:
            logger.debug("Delete of %s ignored: %s", target, exc)
            return 0
        return 1
