from .factory import build_correlation_store
from .postgres_store import PostgresCorrelationStore
from .storage.webhooks import WebhookCredentials
from .store import CorrelationStore

__all__ = [
    "CorrelationStore",
    "PostgresCorrelationStore",
    "WebhookCredentials",
    "build_correlation_store",
]
