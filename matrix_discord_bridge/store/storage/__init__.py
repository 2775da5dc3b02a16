from .correlations import CorrelationRecordsMixin
from .schema import CorrelationSchemaMixin
from .webhooks import WebhookCacheMixin, WebhookCredentials

__all__ = [
    "CorrelationSchemaMixin",
    "CorrelationRecordsMixin",
    "WebhookCacheMixin",
    "WebhookCredentials",
]
