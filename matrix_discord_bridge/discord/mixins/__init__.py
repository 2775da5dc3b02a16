
from .delivery_mixin import DeliveryMixin
from .events_mixin import RelayEventsMixin
from .webhook_mixin import WebhookMixin

__all__ = [
    "DeliveryMixin",
    "RelayEventsMixin",
    "WebhookMixin",
]
