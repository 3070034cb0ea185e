"""Realtime event vocabulary and builders for domain events.

Target rooms are derived from the conversation an event belongs to:

* direct chat: ``user:<recipient>`` plus ``chat:<conversation>``
* group: ``group:<group_id>``
* channel: ``channel:<channel_id>``

Presence events are broadcast to every session. Events for one conversation
share an ordering key so the dispatcher emits them in commit order.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from clinx_relay.repositories.records import ConversationKind, ConversationRecord, MessageRecord
from clinx_relay.realtime.rooms import RoomKey


class EventName(str, Enum):
    RECEIVE_MESSAGE = "receive_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_DELETED = "message_deleted"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    MESSAGE_SEEN = "message_seen"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    ONLINE_USERS = "online_users"
    NOTIFICATION = "notification"
    NOTIFICATION_READ = "notification_read"
    GROUP_ADDED = "group_added"
    GROUP_REMOVED = "group_removed"
    GROUP_PERMISSIONS_UPDATED = "group_permissions_updated"
    CHANNEL_ADDED = "channel_added"
    ERROR = "error"


@dataclass(frozen=True)
class DomainEvent:
    """An event plus the rooms it targets.

    ``exclude_session`` drops the originating connection; ``exclude_user``
    drops every session of a user. ``broadcast`` ignores ``rooms`` and
    targets all live sessions.
    """

    name: EventName
    payload: dict[str, Any]
    rooms: tuple[RoomKey, ...] = ()
    broadcast: bool = False
    exclude_session: str | None = None
    exclude_user: int | None = None
    ordering_key: str | None = field(default=None, compare=False)


def conversation_ref(conversation: ConversationRecord) -> dict[str, Any]:
    """Client-facing reference of a conversation."""
    ref: dict[str, Any] = {"chat_id": conversation.id, "kind": conversation.kind.value}
    if conversation.group_id is not None:
        ref["group_id"] = conversation.group_id
    if conversation.channel_id is not None:
        ref["channel_id"] = conversation.channel_id
    return ref


def conversation_rooms(conversation: ConversationRecord, actor_id: int) -> tuple[RoomKey, ...]:
    """Resolve the rooms interested in events of ``conversation``."""
    if conversation.kind is ConversationKind.GROUP and conversation.group_id is not None:
        return (RoomKey.group(conversation.group_id),)
    if conversation.kind is ConversationKind.CHANNEL and conversation.channel_id is not None:
        return (RoomKey.channel(conversation.channel_id),)
    rooms = [RoomKey.chat(conversation.id)]
    pair = conversation.direct_pair
    if pair is not None:
        rooms.extend(RoomKey.user(uid) for uid in pair if uid != actor_id)
    return tuple(rooms)


def ordering_key(conversation: ConversationRecord) -> str:
    return f"conversation:{conversation.id}"


def message_created(
    conversation: ConversationRecord,
    message: MessageRecord,
    *,
    origin_session: str | None = None,
) -> DomainEvent:
    payload = conversation_ref(conversation)
    payload["message"] = message.to_payload()
    return DomainEvent(
        name=EventName.RECEIVE_MESSAGE,
        payload=payload,
        rooms=conversation_rooms(conversation, message.sender_id),
        exclude_session=origin_session,
        ordering_key=ordering_key(conversation),
    )


def message_deleted(conversation: ConversationRecord, message_id: int, actor_id: int) -> DomainEvent:
    payload = conversation_ref(conversation)
    payload["message_id"] = message_id
    return DomainEvent(
        name=EventName.MESSAGE_DELETED,
        payload=payload,
        rooms=conversation_rooms(conversation, actor_id),
        ordering_key=ordering_key(conversation),
    )


def message_delivered(conversation: ConversationRecord, message: MessageRecord) -> DomainEvent:
    """Tell the sender's sessions that a message reached a recipient."""
    payload = conversation_ref(conversation)
    payload.update(
        {
            "message_id": message.id,
            "delivered_at": message.to_payload()["delivered_at"],
        }
    )
    return DomainEvent(
        name=EventName.MESSAGE_DELIVERED,
        payload=payload,
        rooms=(RoomKey.user(message.sender_id),),
        ordering_key=ordering_key(conversation),
    )


def indicator(
    name: EventName,
    conversation: ConversationRecord,
    user_id: int,
    user_name: str | None = None,
    *,
    origin_session: str | None = None,
) -> DomainEvent:
    """Typing, stop-typing and seen indicators; never echoed to the actor."""
    payload = conversation_ref(conversation)
    payload["user_id"] = user_id
    if user_name is not None and name is not EventName.STOP_TYPING:
        payload["name"] = user_name
    return DomainEvent(
        name=name,
        payload=payload,
        rooms=conversation_rooms(conversation, user_id),
        exclude_session=origin_session,
        exclude_user=user_id,
        ordering_key=ordering_key(conversation),
    )


def presence(online: bool, user_id: int, name: str) -> DomainEvent:
    return DomainEvent(
        name=EventName.USER_ONLINE if online else EventName.USER_OFFLINE,
        payload={"user_id": user_id, "name": name},
        broadcast=True,
        exclude_user=user_id,
    )


def to_user(name: EventName, user_id: int, payload: dict[str, Any]) -> DomainEvent:
    """Event for every live session of one user."""
    return DomainEvent(name=name, payload=payload, rooms=(RoomKey.user(user_id),))


def to_room(name: EventName, room: RoomKey, payload: dict[str, Any]) -> DomainEvent:
    return DomainEvent(name=name, payload=payload, rooms=(room,), ordering_key=str(room))
