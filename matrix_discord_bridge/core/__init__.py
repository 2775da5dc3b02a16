from .adapter import PlatformAdapter
from .bridge import RelayBridge
from .errors import BridgeError, DeliveryError, MalformedIdentityError, StoreConsistencyError
from .models import (
    DISCORD,
    MATRIX,
    Author,
    Destination,
    IncomingEdit,
    IncomingMessage,
    MessageIdentity,
    QuotedMessage,
    RoomPair,
)
from .routing import RoomRouter

__all__ = [
    "DISCORD",
    "MATRIX",
    "Author",
    "BridgeError",
    "DeliveryError",
    "Destination",
    "IncomingEdit",
    "IncomingMessage",
    "MalformedIdentityError",
    "MessageIdentity",
    "PlatformAdapter",
    "QuotedMessage",
    "RelayBridge",
    "RoomPair",
    "RoomRouter",
    "StoreConsistencyError",
]
