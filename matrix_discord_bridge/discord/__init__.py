
from .client import BridgeDiscordBot

__all__ = ["BridgeDiscordBot"]
