from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .core.models import RoomPair


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def parse_room_pairs(raw: str) -> tuple[list[RoomPair], list[str]]:
    """Parse `matrix_room|discord_channel|discord_guild` entries.

    Entries are separated by commas or newlines. Returns the parsed pairs and
    the entries that could not be parsed.
    """
    pairs: list[RoomPair] = []
    invalid: list[str] = []
    for chunk in re.split(r"[,\n]", raw or ""):
        entry = chunk.strip()
        if not entry or entry.startswith("#"):
            continue
        parts = [part.strip() for part in entry.split("|")]
        if len(parts) != 3 or not parts[0].startswith("!") or ":" not in parts[0]:
            invalid.append(entry)
            continue
        try:
            channel_id = int(parts[1])
            guild_id = int(parts[2])
        except ValueError:
            invalid.append(entry)
            continue
        pairs.append(RoomPair(matrix_room_id=parts[0], discord_channel_id=channel_id, discord_guild_id=guild_id))
    return pairs, invalid


@dataclass(slots=True)
class Settings:
    discord_token: str
    discord_message_content_intent: bool
    discord_webhook_name: str

    matrix_homeserver: str
    matrix_user_id: str
    matrix_access_token: str
    matrix_password: str
    matrix_device_name: str
    matrix_puppet_prefix: str
    matrix_sync_timeout_ms: int

    sqlite_path: Path
    correlation_backend: str
    correlation_postgres_dsn: str
    log_level: str

    room_pairs: list[RoomPair] = field(default_factory=list)
    invalid_room_pairs: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        pairs, invalid = parse_room_pairs(_env_lookup("BRIDGE_ROOM_PAIRS", aliases=("BRIDGE_ROOMS",)) or "")
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            discord_webhook_name=_env_str("DISCORD_WEBHOOK_NAME", "Matrix Bridge"),
            matrix_homeserver=_env_str("MATRIX_HOMESERVER", "", aliases=("MATRIX_HOMESERVER_URL",)).rstrip("/"),
            matrix_user_id=_env_str("MATRIX_USER_ID", "", aliases=("MATRIX_USER",)),
            matrix_access_token=_env_str("MATRIX_ACCESS_TOKEN", ""),
            matrix_password=_env_str("MATRIX_PASSWORD", ""),
            matrix_device_name=_env_str("MATRIX_DEVICE_NAME", "matrix-discord-bridge"),
            matrix_puppet_prefix=_env_str("MATRIX_PUPPET_PREFIX", ""),
            matrix_sync_timeout_ms=_env_int("MATRIX_SYNC_TIMEOUT_MS", 30000),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/bridge.db")).expanduser(),
            correlation_backend=_env_str("CORRELATION_BACKEND", "sqlite").lower(),
            correlation_postgres_dsn=_env_str("CORRELATION_POSTGRES_DSN", ""),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            room_pairs=pairs,
            invalid_room_pairs=invalid,
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.discord_webhook_name.strip():
            raise ValueError("DISCORD_WEBHOOK_NAME cannot be empty")
        if "discord" in self.discord_webhook_name.lower():
            raise ValueError("DISCORD_WEBHOOK_NAME cannot contain 'discord' (rejected by Discord)")

        if not self.matrix_homeserver.startswith(("http://", "https://")):
            raise ValueError("MATRIX_HOMESERVER must be an http(s) URL")
        if not self.matrix_user_id.startswith("@") or ":" not in self.matrix_user_id:
            raise ValueError("MATRIX_USER_ID must look like @user:server")
        if not self.matrix_access_token and not self.matrix_password:
            raise ValueError("MATRIX_ACCESS_TOKEN or MATRIX_PASSWORD is required")
        if self.matrix_sync_timeout_ms < 1000:
            raise ValueError("MATRIX_SYNC_TIMEOUT_MS must be >= 1000")

        if self.correlation_backend not in ("sqlite", "postgres"):
            raise ValueError("CORRELATION_BACKEND must be sqlite or postgres")
        if self.correlation_backend == "postgres" and not self.correlation_postgres_dsn:
            raise ValueError("CORRELATION_POSTGRES_DSN is required when CORRELATION_BACKEND=postgres")

        if self.invalid_room_pairs:
            raise ValueError(
                "BRIDGE_ROOM_PAIRS has malformed entries (expected !room:server|channel_id|guild_id): "
                + ", ".join(self.invalid_room_pairs)
            )
        if not self.room_pairs:
            raise ValueError("BRIDGE_ROOM_PAIRS must list at least one room pair")
