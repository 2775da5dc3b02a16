from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Destination, MessageIdentity


@runtime_checkable
class PlatformAdapter(Protocol):
    """Outbound half of a platform connection, as seen by the relay core.

    `deliver` and `deliver_edit` raise `DeliveryError` on rejection. Errors from
    `deliver_delete` are ignored by the core, the remote copy may already be gone.
    """

    service: str

    async def deliver(
        self,
        destination: Destination,
        content: str,
        *,
        display_override: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageIdentity: ...

    async def deliver_edit(
        self,
        target: MessageIdentity,
        content: str,
        *,
        display_override: str | None = None,
    ) -> None: ...

    async def deliver_delete(self, target: MessageIdentity) -> None: ...

    def permalink(self, identity: MessageIdentity) -> str | None: ...
