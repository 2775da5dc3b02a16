from __future__ import annotations


class BridgeError(Exception):
    """Base class for relay failures raised by the bridge core or its adapters."""


class DeliveryError(BridgeError):
    """A platform rejected a send or edit (or the request never reached it)."""

    def __init__(self, service: str, action: str, detail: str) -> None:
        self.service = service
        self.action = action
        self.detail = detail
        super().__init__(f"{service} {action} failed: {detail}")


class StoreConsistencyError(BridgeError):
    """The correlation store holds more than one origin for a relayed message."""


class MalformedIdentityError(BridgeError, ValueError):
    """A platform id component could not be parsed."""
