"""Namespaced room keys used to target fan-out."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from clinx_relay.core.errors import ValidationError


class RoomKind(str, Enum):
    USER = "user"
    GROUP = "group"
    CHANNEL = "channel"
    CHAT = "chat"


@dataclass(frozen=True, order=True)
class RoomKey:
    """A room identity; ``group:7`` and ``chat:7`` are distinct keys."""

    kind: RoomKind
    id: int

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, raw: str) -> RoomKey:
        """Parse ``"<kind>:<id>"`` into a key.

        Raises:
            ValidationError: If the prefix is unknown or the id is not an integer.
        """
        prefix, sep, ident = raw.partition(":")
        if not sep:
            raise ValidationError(f"Malformed room key {raw!r}")
        try:
            return cls(RoomKind(prefix), int(ident))
        except ValueError as err:
            raise ValidationError(f"Malformed room key {raw!r}") from err

    @classmethod
    def user(cls, user_id: int) -> RoomKey:
        return cls(RoomKind.USER, int(user_id))

    @classmethod
    def group(cls, group_id: int) -> RoomKey:
        return cls(RoomKind.GROUP, int(group_id))

    @classmethod
    def channel(cls, channel_id: int) -> RoomKey:
        return cls(RoomKind.CHANNEL, int(channel_id))

    @classmethod
    def chat(cls, conversation_id: int) -> RoomKey:
        return cls(RoomKind.CHAT, int(conversation_id))
