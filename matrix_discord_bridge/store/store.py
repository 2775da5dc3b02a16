from __future__ import annotations

from .storage.correlations import CorrelationRecordsMixin
from .storage.schema import CorrelationSchemaMixin
from .storage.webhooks import WebhookCacheMixin


class CorrelationStore(
    CorrelationSchemaMixin,
    CorrelationRecordsMixin,
    WebhookCacheMixin,
):
    """Persistent origin <-> relay message mapping plus the Discord webhook cache."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with self._lock:
            await self._connection().execute("SELECT 1")
