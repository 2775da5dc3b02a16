from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from matrix_discord_bridge.core.bridge import RelayBridge  # noqa: E402
from matrix_discord_bridge.core.content import ZERO_WIDTH_SPACE, sanitize_mentions  # noqa: E402
from matrix_discord_bridge.core.errors import DeliveryError  # noqa: E402
from matrix_discord_bridge.core.models import (  # noqa: E402
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
from matrix_discord_bridge.core.routing import RoomRouter  # noqa: E402
from matrix_discord_bridge.store.store import CorrelationStore  # noqa: E402


MATRIX_ROOM = "!room:example.org"
GUILD_ID = 10
CHANNEL_ID = 20
PAIRS = [RoomPair(matrix_room_id=MATRIX_ROOM, discord_channel_id=CHANNEL_ID, discord_guild_id=GUILD_ID)]

ALICE = Author(
    source=MATRIX,
    id="@alice:example.org",
    ping_token="@alice:example.org",
    tag="@alice:example.org",
    display_name="Alice",
    avatar_ref="https://example.org/alice.png",
)
BOB = Author(
    source=DISCORD,
    id="77",
    ping_token="<@77>",
    tag="bob",
    display_name="Bobby",
)


class _FakeAdapter:
    def __init__(self, service: str, prefix: str) -> None:
        self.service = service
        self.prefix = prefix
        self.counter = 0
        self.sent: list[tuple[MessageIdentity, str, str | None, str | None]] = []
        self.edits: list[tuple[MessageIdentity, str, str | None]] = []
        self.deletes: list[MessageIdentity] = []
        self.fail_send = False
        self.fail_edit = False
        self.fail_delete = False
        self.before_send: Callable[[], Awaitable[None]] | None = None

    async def deliver(
        self,
        destination: Destination,
        content: str,
        *,
        display_override: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageIdentity:
        if self.fail_send:
            raise DeliveryError(self.service, "send", "rejected")
        if self.before_send is not None:
            await self.before_send()
        self.counter += 1
        identity = MessageIdentity(
            self.service,
            destination.server_id,
            destination.room_id,
            f"{self.prefix}{self.counter}",
        )
        self.sent.append((identity, content, display_override, avatar_url))
        return identity

    async def deliver_edit(
        self,
        target: MessageIdentity,
        content: str,
        *,
        display_override: str | None = None,
    ) -> None:
        if self.fail_edit:
            raise DeliveryError(self.service, "edit", "rejected")
        self.edits.append((target, content, display_override))

    async def deliver_delete(self, target: MessageIdentity) -> None:
        if self.fail_delete:
            raise DeliveryError(self.service, "delete", "rejected")
        self.deletes.append(target)

    def permalink(self, identity: MessageIdentity) -> str | None:
        if identity.service != self.service:
            return None
        return f"https://{self.service}.example/{identity.room_id}/{identity.id}"


class _Harness:
    def __init__(self, store: CorrelationStore) -> None:
        self.store = store
        self.bridge = RelayBridge(store, RoomRouter(PAIRS))
        self.discord = _FakeAdapter(DISCORD, "d")
        self.matrix = _FakeAdapter(MATRIX, "$relay")
        self.bridge.register_adapter(self.discord)
        self.bridge.register_adapter(self.matrix)


def _run(tmp_path: Path, scenario: Callable[[_Harness], Awaitable[object]]) -> object:
    async def _main() -> object:
        store = CorrelationStore(tmp_path / "bridge.db")
        await store.init()
        try:
            return await scenario(_Harness(store))
        finally:
            await store.close()

    return asyncio.run(_main())


def _matrix_message(event_id: str, body: str, **kwargs: object) -> IncomingMessage:
    return IncomingMessage(
        identity=MessageIdentity(MATRIX, "", MATRIX_ROOM, event_id),
        author=ALICE,
        body=body,
        **kwargs,  # type: ignore[arg-type]
    )


def test_relay_edit_delete_round_trip(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "hello")
        m2 = await h.bridge.relay(m1)

        assert m2 == MessageIdentity(DISCORD, str(GUILD_ID), str(CHANNEL_ID), "d1")
        assert h.discord.sent == [(m2, "hello", "Alice (@alice:example.org)", "https://example.org/alice.png")]
        assert await h.store.find_origin(m2) == m1.identity

        edited = await h.bridge.propagate_edit(_matrix_message("$m1", "hello again"))
        assert edited == 1
        assert h.discord.edits == [(m2, "hello again", "Alice (@alice:example.org)")]

        deleted = await h.bridge.propagate_delete(m1.identity)
        assert deleted == 1
        assert h.discord.deletes == [m2]
        assert await h.store.count() == 0

        assert await h.bridge.propagate_delete(m1.identity) == 0
        assert h.discord.deletes == [m2]

    _run(tmp_path, scenario)


def test_discord_message_relays_to_matrix_with_mentions_broken(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        message = IncomingMessage(
            identity=MessageIdentity(DISCORD, str(GUILD_ID), str(CHANNEL_ID), "500"),
            author=BOB,
            body="@everyone look",
        )
        relayed = await h.bridge.relay(message)

        assert relayed == MessageIdentity(MATRIX, "", MATRIX_ROOM, "$relay1")
        _, content, display, avatar = h.matrix.sent[0]
        assert content == f"@{ZERO_WIDTH_SPACE}everyone look"
        assert display == "Bobby (bob)"
        assert avatar is None

    _run(tmp_path, scenario)


def test_deleting_the_relay_removes_the_origin(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "hello")
        m2 = await h.bridge.relay(m1)
        assert m2 is not None

        assert await h.bridge.propagate_delete(m2) == 1
        assert h.matrix.deletes == [m1.identity]
        assert h.discord.deletes == []
        assert await h.store.count() == 0

    _run(tmp_path, scenario)


def test_reply_links_to_relay_and_truncates_summary(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        long_line = "x" * 100
        m1 = _matrix_message("$m1", long_line)
        m2 = await h.bridge.relay(m1)
        assert m2 is not None

        m3 = _matrix_message(
            "$m3",
            f"> <@alice:example.org> {long_line}\n\nsounds good",
            reply_to=m1.identity,
            quoted=QuotedMessage(identity=m1.identity, author_ping="@alice:example.org", body=long_line),
        )
        await h.bridge.relay(m3)

        _, content, _, _ = h.discord.sent[-1]
        link = f"https://discord.example/{CHANNEL_ID}/{m2.id}"
        expected = f"> @alice:example.org [{'x' * 64}...]({link})\nsounds good\n"
        assert content == sanitize_mentions(expected)

    _run(tmp_path, scenario)


def test_reply_to_a_relay_anchors_on_its_origin(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        origin = IncomingMessage(
            identity=MessageIdentity(DISCORD, str(GUILD_ID), str(CHANNEL_ID), "500"),
            author=BOB,
            body="question?",
        )
        relay = await h.bridge.relay(origin)
        assert relay is not None

        reply = _matrix_message(
            "$m9",
            "answer",
            reply_to=relay,
            quoted=QuotedMessage(identity=relay, author_ping="Bobby (bob)", body="question?"),
        )
        await h.bridge.relay(reply)

        _, content, _, _ = h.discord.sent[-1]
        assert content == f"> Bobby (bob) [question?](https://discord.example/{CHANNEL_ID}/500)\nanswer\n"

    _run(tmp_path, scenario)


def test_reply_without_known_target_keeps_plain_summary(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        unknown = MessageIdentity(MATRIX, "", MATRIX_ROOM, "$gone")
        reply = _matrix_message(
            "$m4",
            "> <@carol:example.org> earlier\n\nok",
            reply_to=unknown,
            quoted=QuotedMessage(identity=unknown, author_ping="@carol:example.org", body="earlier"),
        )
        await h.bridge.relay(reply)

        _, content, _, _ = h.discord.sent[-1]
        assert content == sanitize_mentions("> @carol:example.org earlier\nok\n")

    _run(tmp_path, scenario)


def test_reply_without_quoted_message_only_strips_the_fallback(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        reply = _matrix_message(
            "$m5",
            "> <@carol:example.org> earlier\n\nok",
            reply_to=MessageIdentity(MATRIX, "", MATRIX_ROOM, "$gone"),
        )
        await h.bridge.relay(reply)
        assert h.discord.sent[-1][1] == "ok\n"

    _run(tmp_path, scenario)


def test_unpaired_room_is_ignored(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        message = IncomingMessage(
            identity=MessageIdentity(MATRIX, "", "!other:example.org", "$x"),
            author=ALICE,
            body="hello",
        )
        assert await h.bridge.relay(message) is None
        assert h.discord.sent == []
        assert h.matrix.sent == []

        edit = IncomingEdit(identity=message.identity, author=ALICE, body="changed")
        assert await h.bridge.propagate_edit(edit) == 0
        assert h.discord.edits == []

    _run(tmp_path, scenario)


def test_delivery_failure_records_nothing(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        h.discord.fail_send = True
        with pytest.raises(DeliveryError):
            await h.bridge.relay(_matrix_message("$m1", "hello"))
        assert await h.store.count() == 0

    _run(tmp_path, scenario)


def test_edit_failure_is_reported_after_trying_every_relay(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "hello")
        await h.bridge.relay(m1)
        h.discord.fail_edit = True

        with pytest.raises(DeliveryError):
            await h.bridge.propagate_edit(_matrix_message("$m1", "changed"))
        assert await h.store.count() == 1

    _run(tmp_path, scenario)


def test_edit_of_a_relayed_copy_is_not_propagated(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m2 = await h.bridge.relay(_matrix_message("$m1", "hello"))
        assert m2 is not None

        edit = IncomingEdit(identity=m2, author=BOB, body="tampered")
        assert await h.bridge.propagate_edit(edit) == 0
        assert h.matrix.edits == []

    _run(tmp_path, scenario)


def test_delete_failure_is_swallowed_and_record_dropped(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "hello")
        await h.bridge.relay(m1)
        h.discord.fail_delete = True

        assert await h.bridge.propagate_delete(m1.identity) == 0
        assert await h.store.count() == 0

    _run(tmp_path, scenario)


def test_delete_racing_create_removes_the_late_relay(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "hello")

        async def origin_deleted_mid_flight() -> None:
            await h.bridge.propagate_delete(m1.identity)

        h.discord.before_send = origin_deleted_mid_flight
        assert await h.bridge.relay(m1) is None

        relayed = h.discord.sent[0][0]
        assert h.discord.deletes == [relayed]
        assert await h.store.count() == 0
        assert await h.store.find_origin(relayed) is None

    _run(tmp_path, scenario)


def test_registering_the_same_platform_twice_fails(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        with pytest.raises(ValueError):
            h.bridge.register_adapter(_FakeAdapter(DISCORD, "x"))

    _run(tmp_path, scenario)


def test_missing_adapter_is_a_delivery_error(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        del h.bridge.adapters[DISCORD]
        with pytest.raises(DeliveryError):
            await h.bridge.relay(_matrix_message("$m1", "hello"))

    _run(tmp_path, scenario)


def test_edit_of_a_reply_rebuilds_the_reply_header(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "what time?")
        m2 = await h.bridge.relay(m1)
        assert m2 is not None

        quoted = QuotedMessage(identity=m1.identity, author_ping="@alice:example.org", body="what time?")
        m3 = _matrix_message("$m3", "> <@alice:example.org> what time?\n\nnoon", reply_to=m1.identity, quoted=quoted)
        m3_relay = await h.bridge.relay(m3)
        assert m3_relay is not None

        edit = IncomingEdit(
            identity=m3.identity,
            author=ALICE,
            body="> <@alice:example.org> what time?\n\nnoon, sharp",
            reply_to=m1.identity,
            quoted=quoted,
        )
        assert await h.bridge.propagate_edit(edit) == 1

        target, content, _ = h.discord.edits[0]
        link = f"https://discord.example/{CHANNEL_ID}/{m2.id}"
        assert target == m3_relay
        assert content == sanitize_mentions(f"> @alice:example.org [what time?]({link})\nnoon, sharp\n")
        assert "<@alice:example.org>" not in content

    _run(tmp_path, scenario)


def test_concurrent_replies_and_delete_leave_a_consistent_store(tmp_path: Path) -> None:
    async def scenario(h: _Harness) -> None:
        m1 = _matrix_message("$m1", "topic")
        m2 = await h.bridge.relay(m1)
        other = _matrix_message("$m2", "unrelated")
        other_relay = await h.bridge.relay(other)
        assert m2 is not None and other_relay is not None

        quoted = QuotedMessage(identity=m1.identity, author_ping="@alice:example.org", body="topic")
        first = _matrix_message("$r1", "one", reply_to=m1.identity, quoted=quoted)
        second = _matrix_message("$r2", "two", reply_to=m1.identity, quoted=quoted)

        r1, r2, deleted = await asyncio.gather(
            h.bridge.relay(first),
            h.bridge.relay(second),
            h.bridge.propagate_delete(other.identity),
        )

        assert r1 is not None and r2 is not None and r1 != r2
        assert deleted == 1
        link = f"https://discord.example/{CHANNEL_ID}/{m2.id}"
        reply_contents = [content for identity, content, _, _ in h.discord.sent if identity in (r1, r2)]
        assert len(reply_contents) == 2
        assert all(f"]({link})" in content for content in reply_contents)

        assert await h.store.find_origin(other_relay) is None
        assert await h.store.find_relays(other.identity) == []
        assert await h.store.find_origin(r1) == first.identity
        assert await h.store.find_origin(r2) == second.identity
        assert await h.store.count() == 3

    _run(tmp_path, scenario)
