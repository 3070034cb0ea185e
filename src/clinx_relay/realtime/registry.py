"""In-memory registry of live sessions and the rooms they joined.

One instance is created per process and handed to the gateway and the
dispatcher through ``app.state``. Every mutation runs under a lock and never
awaits, so concurrent connects and disconnects cannot interleave mid-update.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any, Protocol

from clinx_relay.realtime.rooms import RoomKey

logger = logging.getLogger(__name__)


class LiveSession(Protocol):
    """A connected transport endpoint owned by one user."""

    session_id: str
    user_id: int
    name: str

    async def send(self, event: str, payload: dict[str, Any]) -> None: ...


class PresenceRegistry:
    """Tracks sessions per user and room membership per session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, LiveSession] = {}
        self._by_user: dict[int, set[str]] = {}
        self._rooms: dict[RoomKey, set[str]] = {}
        self._session_rooms: dict[str, set[RoomKey]] = {}

    def register(self, session: LiveSession) -> bool:
        """Add a session and join it to its own user room.

        Returns:
            True when this is the user's first live session.
        """
        with self._lock:
            if session.session_id in self._sessions:
                return False
            self._sessions[session.session_id] = session
            user_sessions = self._by_user.setdefault(session.user_id, set())
            first = not user_sessions
            user_sessions.add(session.session_id)
            self._join_locked(session.session_id, RoomKey.user(session.user_id))
        logger.debug("Registered session %s for user %s", session.session_id, session.user_id)
        return first

    def unregister(self, session_id: str) -> bool:
        """Remove exactly one session and all of its room entries.

        Returns:
            True when the user has no live session left.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            for room in self._session_rooms.pop(session_id, set()):
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(session_id)
                if not members:
                    del self._rooms[room]
            user_sessions = self._by_user.get(session.user_id, set())
            user_sessions.discard(session_id)
            last = not user_sessions
            if last:
                self._by_user.pop(session.user_id, None)
        logger.debug("Unregistered session %s for user %s", session_id, session.user_id)
        return last

    def get(self, session_id: str) -> LiveSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))

    def online_users(self) -> set[int]:
        with self._lock:
            return set(self._by_user)

    def sessions_for_user(self, user_id: int) -> list[LiveSession]:
        with self._lock:
            return [self._sessions[sid] for sid in sorted(self._by_user.get(user_id, ()))]

    def all_sessions(self) -> list[LiveSession]:
        with self._lock:
            return list(self._sessions.values())

    def _join_locked(self, session_id: str, room: RoomKey) -> None:
        self._rooms.setdefault(room, set()).add(session_id)
        self._session_rooms.setdefault(session_id, set()).add(room)

    def _leave_locked(self, session_id: str, room: RoomKey) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(session_id)
            if not members:
                del self._rooms[room]
        rooms = self._session_rooms.get(session_id)
        if rooms is not None:
            rooms.discard(room)

    def join_room(self, session_id: str, room: RoomKey) -> bool:
        with self._lock:
            if session_id not in self._sessions:
                return False
            self._join_locked(session_id, room)
            return True

    def leave_room(self, session_id: str, room: RoomKey) -> None:
        with self._lock:
            self._leave_locked(session_id, room)

    def join_user(self, user_id: int, room: RoomKey) -> int:
        """Join every live session of a user to ``room``; return how many."""
        with self._lock:
            session_ids = list(self._by_user.get(user_id, ()))
            for sid in session_ids:
                self._join_locked(sid, room)
        if session_ids:
            logger.debug("Joined %d session(s) of user %s to %s", len(session_ids), user_id, room)
        return len(session_ids)

    def leave_user(self, user_id: int, room: RoomKey) -> int:
        """Remove every live session of a user from ``room``; return how many."""
        with self._lock:
            session_ids = list(self._by_user.get(user_id, ()))
            for sid in session_ids:
                self._leave_locked(sid, room)
        return len(session_ids)

    def rooms_of(self, session_id: str) -> frozenset[RoomKey]:
        with self._lock:
            return frozenset(self._session_rooms.get(session_id, ()))

    def sessions_in_rooms(self, rooms: Iterable[RoomKey]) -> list[LiveSession]:
        """Return the distinct sessions joined to any of ``rooms``."""
        with self._lock:
            seen: dict[str, LiveSession] = {}
            for room in rooms:
                for sid in self._rooms.get(room, ()):
                    if sid not in seen:
                        seen[sid] = self._sessions[sid]
            return list(seen.values())
