"""Typed records returned by the conversation store.

Services and the realtime layer only ever see these immutable records, never
ORM instances or raw rows.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from clinx_relay.db.time import as_utc


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ConversationRecord:
    id: int
    kind: ConversationKind
    created_at: datetime
    group_id: int | None = None
    channel_id: int | None = None
    pair_key: str | None = None

    @property
    def direct_pair(self) -> tuple[int, int] | None:
        """Return the two user ids of a direct chat."""
        if self.pair_key is None:
            return None
        low, high = self.pair_key.split(":")
        return int(low), int(high)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "group_id": self.group_id,
            "channel_id": self.channel_id,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class ParticipantRecord:
    conversation_id: int
    user_id: int
    role: str | None
    joined_at: datetime
    is_muted: bool = False
    last_read_at: datetime | None = None
    name: str | None = None
    profile_picture: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "profile_picture": self.profile_picture,
            "role": self.role,
            "joined_at": _iso(self.joined_at),
            "is_muted": self.is_muted,
        }


@dataclass(frozen=True)
class MessageRecord:
    """Persisted message with its aggregate delivery timestamps."""

    id: int
    conversation_id: int
    sender_id: int
    message_type: str
    content: str | None
    created_at: datetime
    file_path: str | None = None
    duration: int | None = None
    delivered_at: datetime | None = None
    seen_at: datetime | None = None
    sender_name: str | None = None
    sender_picture: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_picture": self.sender_picture,
            "message_type": self.message_type,
            "content": self.content,
            "file_path": self.file_path,
            "duration": self.duration,
            "created_at": _iso(self.created_at),
            "delivered_at": _iso(self.delivered_at),
            "seen_at": _iso(self.seen_at),
        }


@dataclass(frozen=True)
class ConversationSummary:
    """Conversation as listed for one viewer."""

    conversation: ConversationRecord
    last_message: MessageRecord | None
    unread_count: int
    title: str | None = None
    peer_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.conversation.to_payload()
        payload.update(
            {
                "title": self.title,
                "peer_id": self.peer_id,
                "last_message": self.last_message.to_payload() if self.last_message else None,
                "unread_count": self.unread_count,
            }
        )
        return payload
