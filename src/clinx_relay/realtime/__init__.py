"""Live session tracking and event fan-out."""

from .dispatcher import DispatchResult, Dispatcher
from .events import DomainEvent, EventName
from .registry import LiveSession, PresenceRegistry
from .rooms import RoomKey, RoomKind

__all__ = [
    "Dispatcher",
    "DispatchResult",
    "DomainEvent",
    "EventName",
    "LiveSession",
    "PresenceRegistry",
    "RoomKey",
    "RoomKind",
]
