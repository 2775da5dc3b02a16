from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import aiohttp
from nio import (
    AsyncClient,
    AsyncClientConfig,
    JoinError,
    LoginResponse,
    MatrixRoom,
    RedactionEvent,
    RoomGetEventError,
    RoomMessageText,
    RoomRedactError,
    RoomSendError,
    SyncError,
    WhoamiError,
)

from ..config import Settings
from ..core.bridge import RelayBridge
from ..core.errors import DeliveryError, MalformedIdentityError
from ..core.models import MATRIX, Author, Destination, IncomingEdit, IncomingMessage, MessageIdentity, QuotedMessage
from .common import (
    attribute,
    author_from_member,
    edit_content,
    is_puppet,
    matrix_identity,
    mxc_to_http,
    quoted_from_event,
    replace_target,
    replacement_body,
    reply_target,
    text_content,
)
from .common import permalink as event_permalink

logger = logging.getLogger("matrix_discord_bridge")


class MatrixBridgeClient:
    """Matrix half of the bridge, driven by a matrix-nio `AsyncClient`."""

    service = MATRIX

    def __init__(self, settings: Settings, bridge: RelayBridge, client: AsyncClient | None = None) -> None:
        self.settings = settings
        self.bridge = bridge
        self.client = client or AsyncClient(
            settings.matrix_homeserver,
            settings.matrix_user_id,
            config=AsyncClientConfig(store_sync_tokens=False),
        )
        self._closed = asyncio.Event()
        bridge.register_adapter(self)

    @property
    def user_id(self) -> str:
        return self.client.user_id or self.settings.matrix_user_id

    async def login(self) -> None:
        if self.settings.matrix_access_token:
            self.client.access_token = self.settings.matrix_access_token
            self.client.user_id = self.settings.matrix_user_id
            resp = await self.client.whoami()
            if isinstance(resp, WhoamiError):
                raise RuntimeError(f"Matrix access token rejected: {resp.message}")
            logger.info("Using Matrix access token for %s on %s", resp.user_id, self.settings.matrix_homeserver)
            return

        resp = await self.client.login(self.settings.matrix_password, device_name=self.settings.matrix_device_name)
        if not isinstance(resp, LoginResponse):
            raise RuntimeError(f"Matrix login failed: {resp}")
        logger.info("Logged in to Matrix as %s (device %s)", resp.user_id, resp.device_id)

    async def _join_rooms(self) -> None:
        for room_id in self.bridge.router.matrix_rooms():
            resp = await self.client.join(room_id)
            if isinstance(resp, JoinError):
                logger.warning("Could not join Matrix room %s: %s", room_id, resp.message)

    async def run(self) -> None:
        await self.login()
        await self._join_rooms()

        # Initial sync so backlog is never relayed.
        resp = await self.client.sync(timeout=10_000, full_state=True)
        if isinstance(resp, SyncError):
            raise RuntimeError(f"Initial Matrix sync failed: {resp.message}")
        logger.info("Initial Matrix sync done, listening in %s room(s)", len(self.bridge.router.matrix_rooms()))

        self.client.add_event_callback(self.on_room_message, RoomMessageText)
        self.client.add_event_callback(self.on_redaction, RedactionEvent)

        sync_task = asyncio.create_task(
            self.client.sync_forever(timeout=self.settings.matrix_sync_timeout_ms),
            name="matrix-sync",
        )
        closed_task = asyncio.create_task(self._closed.wait(), name="matrix-closed")
        try:
            await asyncio.wait({sync_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sync_task, closed_task):
                task.cancel()
            await asyncio.gather(sync_task, closed_task, return_exceptions=True)
        if sync_task.done() and not sync_task.cancelled() and sync_task.exception() is not None:
            raise sync_task.exception()  # type: ignore[misc]

    async def close(self) -> None:
        self._closed.set()
        try:
            await asyncio.wait_for(self.client.close(), timeout=6.0)
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: matrix.AsyncClient.close")
        except Exception as exc:
            logger.warning("Shutdown step failed: matrix.AsyncClient.close (%s)", exc)

    def _should_ignore(self, room: MatrixRoom, sender: str) -> bool:
        if sender == self.user_id:
            return True
        # Puppets belong to another bridge relaying Discord already.
        if is_puppet(sender, self.settings.matrix_puppet_prefix):
            return True
        return not self.bridge.is_bridged(MATRIX, room.room_id)

    def _author(self, room: MatrixRoom, sender: str) -> Author:
        member = room.users.get(sender)
        display_name = member.display_name if member is not None else None
        avatar = mxc_to_http(member.avatar_url if member is not None else None, self.settings.matrix_homeserver)
        return author_from_member(sender, display_name, avatar, self.settings.matrix_puppet_prefix)

    async def _fetch_event(self, room_id: str, event_id: str) -> Mapping[str, Any] | None:
        resp = await self.client.room_get_event(room_id, event_id)
        if isinstance(resp, RoomGetEventError):
            logger.debug("Could not fetch Matrix event %s: %s", event_id, resp.message)
            return None
        return resp.event.source

    async def _quoted(self, room_id: str, event_id: str) -> QuotedMessage | None:
        source = await self._fetch_event(room_id, event_id)
        if source is None:
            return None
        try:
            return quoted_from_event(
                room_id,
                source,
                own_user_id=self.user_id,
                puppet_prefix=self.settings.matrix_puppet_prefix,
            )
        except MalformedIdentityError as exc:
            logger.debug("Ignoring quoted event %s: %s", event_id, exc)
            return None

    async def _reply_context(
        self,
        room_id: str,
        source: Mapping[str, Any],
    ) -> tuple[MessageIdentity | None, QuotedMessage | None]:
        target = reply_target(source)
        if target is None:
            return None, None
        return matrix_identity(room_id, target), await self._quoted(room_id, target)

    async def on_room_message(self, room: MatrixRoom, event: RoomMessageText) -> None:
        if self._should_ignore(room, event.sender):
            return
        try:
            edited = replace_target(event.source)
            if edited is not None:
                await self._handle_edit(room, event, edited)
                return

            reply_to, quoted = await self._reply_context(room.room_id, event.source)
            incoming = IncomingMessage(
                identity=matrix_identity(room.room_id, event.event_id),
                author=self._author(room, event.sender),
                body=event.body,
                reply_to=reply_to,
                quoted=quoted,
            )
        except MalformedIdentityError as exc:
            logger.warning("Ignoring Matrix event %s: %s", event.event_id, exc)
            return

        try:
            await self.bridge.relay(incoming)
        except DeliveryError as exc:
            logger.warning("Relay of %s to Discord failed: %s", incoming.identity, exc)
        except Exception as exc:
            logger.exception("Relay of %s aborted: %s", incoming.identity, exc)

    async def _handle_edit(self, room: MatrixRoom, event: RoomMessageText, edited_id: str) -> None:
        # Reply context lives on the original event, not on the m.replace one.
        original = await self._fetch_event(room.room_id, edited_id)
        reply_to, quoted = (None, None)
        if original is not None:
            reply_to, quoted = await self._reply_context(room.room_id, original)

        edit = IncomingEdit(
            identity=matrix_identity(room.room_id, edited_id),
            author=self._author(room, event.sender),
            body=replacement_body(event.source, event.body),
            reply_to=reply_to,
            quoted=quoted,
        )
        try:
            await self.bridge.propagate_edit(edit)
        except DeliveryError as exc:
            logger.warning("Edit of %s on Discord failed: %s", edit.identity, exc)
        except Exception as exc:
            logger.exception("Edit propagation for %s aborted: %s", edit.identity, exc)

    async def on_redaction(self, room: MatrixRoom, event: RedactionEvent) -> None:
        if event.sender == self.user_id or not self.bridge.is_bridged(MATRIX, room.room_id):
            return
        try:
            identity = matrix_identity(room.room_id, event.redacts)
        except MalformedIdentityError as exc:
            logger.warning("Ignoring Matrix redaction %s: %s", event.event_id, exc)
            return
        try:
            await self.bridge.propagate_delete(identity)
        except Exception as exc:
            logger.exception("Delete propagation for %s aborted: %s", identity, exc)

    async def _room_send(self, room_id: str, content: dict[str, Any], action: str) -> Any:
        try:
            resp = await self.client.room_send(
                room_id,
                message_type="m.room.message",
                content=content,
                ignore_unverified_devices=True,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(MATRIX, action, f"{room_id}: {exc}") from exc
        if isinstance(resp, RoomSendError):
            raise DeliveryError(MATRIX, action, f"{room_id}: {resp.message}")
        return resp

    async def deliver(
        self,
        destination: Destination,
        content: str,
        *,
        display_override: str | None = None,
        avatar_url: str | None = None,
    ) -> MessageIdentity:
        # A plain account cannot change its name per message; attribute in the body.
        resp = await self._room_send(destination.room_id, text_content(attribute(display_override, content)), "send")
        return matrix_identity(destination.room_id, resp.event_id)

    async def deliver_edit(
        self,
        target: MessageIdentity,
        content: str,
        *,
        display_override: str | None = None,
    ) -> None:
        await self._room_send(target.room_id, edit_content(target.id, attribute(display_override, content)), "edit")

    async def deliver_delete(self, target: MessageIdentity) -> None:
        try:
            resp = await self.client.room_redact(target.room_id, target.id, reason="Deleted on Discord")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DeliveryError(MATRIX, "delete", f"{target}: {exc}") from exc
        if isinstance(resp, RoomRedactError):
            raise DeliveryError(MATRIX, "delete", f"{target}: {resp.message}")

    def permalink(self, identity: MessageIdentity) -> str | None:
        if identity.service != MATRIX:
            return None
        return event_permalink(identity)
