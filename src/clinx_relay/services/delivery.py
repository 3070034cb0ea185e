"""Sent, delivered and seen lifecycle of messages.

Transitions are guarded updates that only fill NULL timestamps, so replays
and concurrent viewers converge without errors. Unread counts are always
derived from ``seen_at``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from clinx_relay.repositories.conversation_store import ConversationStore
from clinx_relay.repositories.records import MessageRecord

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"


def state_of(message: MessageRecord) -> DeliveryState:
    if message.seen_at is not None:
        return DeliveryState.SEEN
    if message.delivered_at is not None:
        return DeliveryState.DELIVERED
    return DeliveryState.SENT


@dataclass(frozen=True)
class SeenBatch:
    """Result of one bulk seen transition."""

    count: int
    seen_at: datetime | None


class DeliveryTracker:
    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    async def mark_delivered(self, message_id: int) -> bool:
        """Move a message to Delivered; True only on the first transition."""
        changed = await self.store.atomic_async(
            "mark_delivered", lambda: self.store.mark_delivered(message_id)
        )
        if changed:
            logger.debug("Message %s delivered", message_id)
        return changed

    async def confirm_pulled(self, conversation_id: int, viewer_id: int) -> int:
        """Delivered fallback for recipients that fetch instead of listening live."""
        return await self.store.atomic_async(
            "mark_delivered_for_viewer",
            lambda: self.store.mark_delivered_for_viewer(conversation_id, viewer_id),
        )

    async def mark_seen(self, conversation_id: int, viewer_id: int) -> SeenBatch:
        """Bulk Seen transition keyed by ``(conversation, viewer)``."""
        count, stamp = await self.store.atomic_async(
            "mark_seen", lambda: self.store.mark_seen_bulk(conversation_id, viewer_id)
        )
        if count:
            logger.debug(
                "User %s saw %d message(s) in conversation %s", viewer_id, count, conversation_id
            )
        return SeenBatch(count=count, seen_at=stamp)

    def unread_count(self, conversation_id: int, viewer_id: int) -> int:
        return self.store.read(
            "count_unseen", lambda: self.store.count_unseen(conversation_id, viewer_id)
        )
