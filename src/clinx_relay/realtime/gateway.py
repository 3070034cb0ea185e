"""WebSocket transport: handshake, inbound client events and presence.

Each connection becomes one ``WebSocketSession`` in the presence registry.
Inbound frames are ``{"event": name, "data": ...}``; outbound frames use the
same envelope. Domain failures are answered with an ``error`` event and the
connection stays open; authentication failures close it with code 4401.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import AuthenticationError, RelayError, ValidationError
from clinx_relay.core.security import TokenVerifier, VerifiedIdentity
from clinx_relay.core.settings import settings
from clinx_relay.models import User
from clinx_relay.realtime import events
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.events import EventName
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.repositories.records import ConversationKind
from clinx_relay.schemas.message import DirectMessageCreate, MessageCreate
from clinx_relay.schemas.realtime import ClientEvent, ServerEvent
from clinx_relay.services.membership import ConversationRef, MembershipResolver
from clinx_relay.services.messaging import MessageDraft, MessagingService

logger = logging.getLogger(__name__)

WS_CLOSE_UNAUTHORIZED = 4401

Handler = Callable[[Any], Awaitable[None]]


class WebSocketSession:
    """A live connection registered in the presence registry."""

    def __init__(self, websocket: WebSocket, user_id: int, name: str) -> None:
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.user_id = user_id
        self.name = name
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionError(f"session {self.session_id} is closed")
        frame = ServerEvent(event=event, data=payload).model_dump()
        async with self._send_lock:
            await self.websocket.send_json(frame)


def extract_token(websocket: WebSocket) -> str | None:
    """Token from the ``token`` query parameter or an ``Authorization: Bearer`` header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def _int_field(data: Any, key: str) -> int:
    """Read an id from ``{key: id}`` or from a bare id."""
    raw = data.get(key) if isinstance(data, dict) else data
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as err:
        raise ValidationError(f"{key} must be an integer") from err


def conversation_ref_from(data: Any) -> ConversationRef:
    """Pick the conversation a client frame refers to."""
    if not isinstance(data, dict):
        raise ValidationError("Event data must be an object")
    if data.get("group_id") is not None:
        return ConversationRef.group(_int_field(data, "group_id"))
    if data.get("channel_id") is not None:
        return ConversationRef.channel(_int_field(data, "channel_id"))
    if data.get("chat_id") is not None:
        return ConversationRef.direct(_int_field(data, "chat_id"))
    raise ValidationError("One of group_id, channel_id or chat_id is required")


def parse_message(data: Any) -> MessageCreate:
    """Validate a ``send_message`` body; direct sends carry ``receiver_id``."""
    if not isinstance(data, dict):
        raise ValidationError("Event data must be an object")
    schema = DirectMessageCreate if data.get("receiver_id") is not None else MessageCreate
    try:
        return schema.model_validate(data)
    except PydanticValidationError as err:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in err.errors()})
        raise ValidationError(
            "Invalid message: " + ", ".join(fields), data={"fields": fields}
        ) from err


class RealtimeGateway:
    """Serves one WebSocket connection from handshake to disconnect."""

    def __init__(
        self,
        db: Session,
        registry: PresenceRegistry,
        dispatcher: Dispatcher,
        verifier: TokenVerifier,
    ) -> None:
        self.db = db
        self.registry = registry
        self.dispatcher = dispatcher
        self.verifier = verifier
        self.resolver = MembershipResolver(db)
        self.messaging = MessagingService(db, dispatcher)
        self.session: WebSocketSession | None = None
        self._handlers: dict[str, Handler] = {
            "send_message": self._on_send_message,
            "typing": self._on_typing,
            "stop_typing": self._on_stop_typing,
            "message_seen": self._on_message_seen,
            "join_group": self._on_join_group,
            "leave_group": self._on_leave_group,
            "join_channel": self._on_join_channel,
            "leave_channel": self._on_leave_channel,
            "join_chat": self._on_join_chat,
            "leave_chat": self._on_leave_chat,
            "get_online_users": self._on_get_online_users,
            "ack": self._on_ack,
        }

    async def authenticate(self, websocket: WebSocket) -> VerifiedIdentity:
        """Verify the handshake token within the configured deadline.

        Raises:
            AuthenticationError: If the token is missing, invalid, or
                verification does not finish in time.
        """
        token = extract_token(websocket)
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            return await asyncio.wait_for(
                self.verifier.verify(token), timeout=settings.ws_auth_timeout_seconds
            )
        except asyncio.TimeoutError as err:
            raise AuthenticationError("Token verification timed out") from err

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            identity = await self.authenticate(websocket)
            user = self.db.get(User, identity.user_id)
            if user is None or not user.is_active:
                raise AuthenticationError("User not found")
        except AuthenticationError as exc:
            logger.info("Rejected realtime handshake: %s", exc.message)
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=exc.message)
            return

        session = WebSocketSession(websocket, user.id, user.name)
        self.session = session
        try:
            try:
                await self._connect(session)
            except RelayError as exc:
                logger.warning(
                    "Realtime session %s could not connect: %s", session.session_id, exc.message
                )
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason=exc.message)
                return
            while True:
                raw = await websocket.receive_text()
                await self.handle_frame(raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.error("Realtime session %s failed", session.session_id, exc_info=True)
            raise
        finally:
            await self._disconnect(session)

    async def _connect(self, session: WebSocketSession) -> None:
        first = self.registry.register(session)
        try:
            group_ids, channel_ids = self.resolver.room_snapshot(session.user_id)
        finally:
            self._release()
        for group_id in group_ids:
            self.registry.join_room(session.session_id, RoomKey.group(group_id))
        for channel_id in channel_ids:
            self.registry.join_room(session.session_id, RoomKey.channel(channel_id))
        logger.info(
            "User %s connected session %s (%d groups, %d channels)",
            session.user_id,
            session.session_id,
            len(group_ids),
            len(channel_ids),
        )
        if first:
            await self.dispatcher.dispatch(events.presence(True, session.user_id, session.name))

    async def _disconnect(self, session: WebSocketSession) -> None:
        last = self.registry.unregister(session.session_id)
        logger.info("User %s disconnected session %s", session.user_id, session.session_id)
        if last:
            await self.dispatcher.dispatch(events.presence(False, session.user_id, session.name))

    async def handle_frame(self, raw: str) -> None:
        """Decode and run one inbound frame, answering failures with ``error``."""
        try:
            try:
                frame = ClientEvent.model_validate(json.loads(raw))
            except (json.JSONDecodeError, PydanticValidationError) as err:
                raise ValidationError("Malformed event frame") from err
            handler = self._handlers.get(frame.event)
            if handler is None:
                raise ValidationError(f"Unknown event {frame.event!r}")
            await handler(frame.data)
        except RelayError as exc:
            await self._reply(EventName.ERROR, {"code": exc.kind.value, "detail": exc.message})
        finally:
            self._release()

    def _release(self) -> None:
        """End the open read transaction so an idle socket holds no pooled connection."""
        self.db.rollback()

    async def _reply(self, name: EventName, payload: dict[str, Any]) -> None:
        if self.session is not None:
            await self.session.send(name.value, payload)

    # -- handlers ------------------------------------------------------

    async def _on_send_message(self, data: Any) -> None:
        session = self.session
        body = parse_message(data)
        draft = MessageDraft(
            message_type=body.message_type,
            content=body.content,
            file_path=body.file_path,
            duration=body.duration,
        )
        if isinstance(body, DirectMessageCreate):
            result = await self.messaging.send_direct(
                session.user_id,
                body.receiver_id,
                draft,
                origin_session=session.session_id,
            )
        else:
            result = await self.messaging.send(
                session.user_id,
                conversation_ref_from(data),
                draft,
                origin_session=session.session_id,
            )
        payload = events.conversation_ref(result.conversation)
        payload["message"] = result.message.to_payload()
        if data.get("client_id") is not None:
            payload["client_id"] = data["client_id"]
        await self._reply(EventName.MESSAGE_SENT, payload)

    async def _indicate(self, name: EventName, data: Any) -> None:
        await self.messaging.indicate(
            self.session.user_id,
            conversation_ref_from(data),
            name,
            origin_session=self.session.session_id,
        )

    async def _on_typing(self, data: Any) -> None:
        await self._indicate(EventName.TYPING, data)

    async def _on_stop_typing(self, data: Any) -> None:
        await self._indicate(EventName.STOP_TYPING, data)

    async def _on_message_seen(self, data: Any) -> None:
        await self.messaging.mark_seen(
            self.session.user_id,
            conversation_ref_from(data),
            origin_session=self.session.session_id,
        )

    async def _join(self, ref: ConversationRef) -> None:
        membership = self.resolver.require_member(self.session.user_id, ref)
        if ref.kind is ConversationKind.GROUP:
            room = RoomKey.group(ref.id)
        elif ref.kind is ConversationKind.CHANNEL:
            room = RoomKey.channel(ref.id)
        else:
            room = RoomKey.chat(membership.conversation.id)
        self.registry.join_room(self.session.session_id, room)

    async def _on_join_group(self, data: Any) -> None:
        await self._join(ConversationRef.group(_int_field(data, "group_id")))

    async def _on_leave_group(self, data: Any) -> None:
        self.registry.leave_room(self.session.session_id, RoomKey.group(_int_field(data, "group_id")))

    async def _on_join_channel(self, data: Any) -> None:
        await self._join(ConversationRef.channel(_int_field(data, "channel_id")))

    async def _on_leave_channel(self, data: Any) -> None:
        self.registry.leave_room(
            self.session.session_id, RoomKey.channel(_int_field(data, "channel_id"))
        )

    async def _on_join_chat(self, data: Any) -> None:
        await self._join(ConversationRef.direct(_int_field(data, "chat_id")))

    async def _on_leave_chat(self, data: Any) -> None:
        self.registry.leave_room(self.session.session_id, RoomKey.chat(_int_field(data, "chat_id")))

    async def _on_get_online_users(self, data: Any) -> None:
        await self._reply(EventName.ONLINE_USERS, {"user_ids": sorted(self.registry.online_users())})

    async def _on_ack(self, data: Any) -> None:
        await self.messaging.acknowledge(self.session.user_id, _int_field(data, "message_id"))
