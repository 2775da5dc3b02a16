from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from matrix_discord_bridge.config import Settings, parse_room_pairs  # noqa: E402
from matrix_discord_bridge.core.models import RoomPair  # noqa: E402
from matrix_discord_bridge.store.factory import build_correlation_store  # noqa: E402
from matrix_discord_bridge.store.postgres_store import PostgresCorrelationStore  # noqa: E402
from matrix_discord_bridge.store.store import CorrelationStore  # noqa: E402


_ENV = {
    "DISCORD_TOKEN": "Bot abc.def",
    "MATRIX_HOMESERVER": "https://matrix.example.org/",
    "MATRIX_USER_ID": "@bridge:example.org",
    "MATRIX_ACCESS_TOKEN": "syt_token",
    "BRIDGE_ROOM_PAIRS": "!a:example.org|20|10",
}


def _set_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, **overrides: str) -> None:
    for key in (
        "MATRIX_PASSWORD",
        "BRIDGE_ROOMS",
        "DISCORD_WEBHOOK_NAME",
        "MATRIX_SYNC_TIMEOUT_MS",
        "CORRELATION_BACKEND",
        "CORRELATION_POSTGRES_DSN",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "bridge.db"))
    for key, value in {**_ENV, **overrides}.items():
        monkeypatch.setenv(key, value)


def test_parse_room_pairs_accepts_commas_newlines_and_comments() -> None:
    pairs, invalid = parse_room_pairs("!a:example.org|20|10,\n# disabled\n !b:example.org | 21 | 10 ")
    assert pairs == [
        RoomPair(matrix_room_id="!a:example.org", discord_channel_id=20, discord_guild_id=10),
        RoomPair(matrix_room_id="!b:example.org", discord_channel_id=21, discord_guild_id=10),
    ]
    assert invalid == []


def test_parse_room_pairs_reports_malformed_entries() -> None:
    pairs, invalid = parse_room_pairs("#room:example.org|20|10,!a:example.org|x|10,!b:example.org|20")
    assert pairs == []
    assert invalid == ["#room:example.org|20|10", "!a:example.org|x|10", "!b:example.org|20"]


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _set_env(monkeypatch, tmp_path)
    settings = Settings.from_env()
    settings.validate()

    assert settings.discord_token == "abc.def"
    assert settings.matrix_homeserver == "https://matrix.example.org"
    assert settings.discord_webhook_name == "Matrix Bridge"
    assert settings.matrix_sync_timeout_ms == 30000
    assert settings.sqlite_path == tmp_path / "bridge.db"
    assert [pair.discord_channel_id for pair in settings.room_pairs] == [20]


def test_settings_accept_room_alias_variable(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _set_env(monkeypatch, tmp_path)
    monkeypatch.delenv("BRIDGE_ROOM_PAIRS")
    monkeypatch.setenv("BRIDGE_ROOMS", "!z:example.org|30|10")
    settings = Settings.from_env()
    assert settings.room_pairs[0].matrix_room_id == "!z:example.org"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"DISCORD_TOKEN": ""}, "DISCORD_TOKEN"),
        ({"DISCORD_WEBHOOK_NAME": "Discord relay"}, "DISCORD_WEBHOOK_NAME"),
        ({"MATRIX_HOMESERVER": "matrix.example.org"}, "MATRIX_HOMESERVER"),
        ({"MATRIX_USER_ID": "bridge"}, "MATRIX_USER_ID"),
        ({"MATRIX_ACCESS_TOKEN": ""}, "MATRIX_ACCESS_TOKEN"),
        ({"MATRIX_SYNC_TIMEOUT_MS": "10"}, "MATRIX_SYNC_TIMEOUT_MS"),
        ({"BRIDGE_ROOM_PAIRS": "nonsense"}, "malformed"),
        ({"BRIDGE_ROOM_PAIRS": ""}, "at least one"),
        ({"CORRELATION_BACKEND": "mongo"}, "CORRELATION_BACKEND"),
        ({"CORRELATION_BACKEND": "postgres"}, "CORRELATION_POSTGRES_DSN"),
    ],
)
def test_settings_validate_rejects_bad_values(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    overrides: dict[str, str],
    message: str,
) -> None:
    _set_env(monkeypatch, tmp_path, **overrides)
    settings = Settings.from_env()
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_settings_carry_the_store_backend(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _set_env(
        monkeypatch,
        tmp_path,
        CORRELATION_BACKEND="Postgres",
        CORRELATION_POSTGRES_DSN="postgresql://bridge@localhost/bridge",
    )
    settings = Settings.from_env()
    settings.validate()

    assert settings.correlation_backend == "postgres"
    assert settings.correlation_postgres_dsn == "postgresql://bridge@localhost/bridge"


def test_store_factory_defaults_to_sqlite(tmp_path: Path) -> None:
    store = build_correlation_store(tmp_path / "bridge.db")
    assert isinstance(store, CorrelationStore)
    assert store.backend_name == "sqlite"


def test_store_factory_ignores_the_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CORRELATION_BACKEND", "postgres")
    store = build_correlation_store(tmp_path / "bridge.db", "sqlite")
    assert isinstance(store, CorrelationStore)


def test_store_factory_rejects_unknown_backend(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="CORRELATION_BACKEND"):
        build_correlation_store(tmp_path / "bridge.db", "mongo")


def test_store_factory_postgres_requires_dsn(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="CORRELATION_POSTGRES_DSN"):
        build_correlation_store(tmp_path / "bridge.db", "postgres")

    store = build_correlation_store(tmp_path / "bridge.db", "postgres", "postgresql://bridge@localhost/bridge")
    assert isinstance(store, PostgresCorrelationStore)
    assert store.backend_name == "postgres"
