from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

import discord

from ..config import Settings
from ..core.bridge import RelayBridge
from .mixins.delivery_mixin import DeliveryMixin
from .mixins.events_mixin import RelayEventsMixin
from .mixins.webhook_mixin import WebhookMixin

logger = logging.getLogger("matrix_discord_bridge")


class BridgeDiscordBot(
    RelayEventsMixin,
    DeliveryMixin,
    WebhookMixin,
    discord.Client,
):
    def __init__(self, settings: Settings, bridge: RelayBridge) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent

        super().__init__(intents=intents, allowed_mentions=discord.AllowedMentions.none())

        self.settings = settings
        self.bridge = bridge
        self.store = bridge.store

        self.webhooks: dict[int, discord.Webhook] = {}
        self.webhook_locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

        bridge.register_adapter(self)

    async def close(self) -> None:
        self.webhooks.clear()
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected to Discord as %s (%s)", self.user, self.user.id)
        channels = self.bridge.router.discord_channels()
        for channel_id in channels:
            if self.get_channel(channel_id) is None:
                logger.warning("Bridged Discord channel %s is not visible to the bot", channel_id)
        if not self.settings.discord_message_content_intent:
            logger.warning("Message content intent is disabled; Discord messages will relay empty")
        logger.info("Bridging %s Discord channel(s)", len(channels))
