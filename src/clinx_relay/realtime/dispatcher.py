"""Best-effort fan-out of domain events to live sessions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from clinx_relay.realtime.events import DomainEvent
from clinx_relay.realtime.registry import LiveSession, PresenceRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch: sessions written to and their owners."""

    sessions: int = 0
    users: frozenset[int] = frozenset()
    failures: int = 0

    def reached_other_than(self, user_id: int) -> bool:
        return any(uid != user_id for uid in self.users)


class Dispatcher:
    """Emits events to the sessions joined to their target rooms.

    Delivery is at most once per session per event and never queued for
    offline users. Events sharing an ordering key are emitted in the order
    ``dispatch`` was called: the per-key ``asyncio.Lock`` queues waiters
    FIFO and the lock is taken before the first suspension point, so callers
    that dispatch right after committing keep commit order.
    """

    def __init__(self, registry: PresenceRegistry) -> None:
        self.registry = registry
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    async def dispatch(self, event: DomainEvent) -> DispatchResult:
        key = event.ordering_key
        if key is None:
            return await self._deliver(event)

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                return await self._deliver(event)
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                self._locks.pop(key, None)

    def _targets(self, event: DomainEvent) -> list[LiveSession]:
        if event.broadcast:
            sessions = self.registry.all_sessions()
        else:
            sessions = self.registry.sessions_in_rooms(event.rooms)
        return [
            session
            for session in sessions
            if session.session_id != event.exclude_session and session.user_id != event.exclude_user
        ]

    async def _deliver(self, event: DomainEvent) -> DispatchResult:
        targets = self._targets(event)
        if not targets:
            logger.debug("No live sessions for %s", event.name.value)
            return DispatchResult()

        outcomes = await asyncio.gather(
            *(session.send(event.name.value, event.payload) for session in targets),
            return_exceptions=True,
        )
        reached: set[int] = set()
        failures = 0
        for session, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                failures += 1
                logger.warning(
                    "Failed to send %s to session %s: %s",
                    event.name.value,
                    session.session_id,
                    outcome,
                )
                continue
            reached.add(session.user_id)

        logger.debug(
            "Dispatched %s to %d session(s), %d failed",
            event.name.value,
            len(targets) - failures,
            failures,
        )
        return DispatchResult(
            sessions=len(targets) - failures,
            users=frozenset(reached),
            failures=failures,
        )
