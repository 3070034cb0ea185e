"""Persistence operations the messaging core needs, over a sync SQLAlchemy session.

Individual methods only flush. Callers group them into a unit of work with
``atomic`` which commits once, rolls back on any failure and retries the whole
unit when the store reports a transient outage.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import ConflictError
from clinx_relay.db.retry import with_store_retry, with_store_retry_async
from clinx_relay.db.time import utcnow
from clinx_relay.models import Conversation, Message, Participant, User
from clinx_relay.repositories.records import (
    ConversationKind,
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
)

__all__ = ["ConversationStore", "direct_pair_key"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def direct_pair_key(user_a: int, user_b: int) -> str:
    """Return the order-independent key of a direct chat between two users."""
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


def _conversation_record(row: Conversation) -> ConversationRecord:
    return ConversationRecord(
        id=row.id,
        kind=ConversationKind(row.kind),
        created_at=row.created_at,
        group_id=row.group_id,
        channel_id=row.channel_id,
        pair_key=row.pair_key,
    )


def _message_record(row: Message, name: str | None = None, picture: str | None = None) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        sender_id=row.sender_id,
        message_type=row.message_type,
        content=row.content,
        created_at=row.created_at,
        file_path=row.file_path,
        duration=row.duration,
        delivered_at=row.delivered_at,
        seen_at=row.seen_at,
        sender_name=name,
        sender_picture=picture,
    )


def _participant_record(
    row: Participant, name: str | None = None, picture: str | None = None
) -> ParticipantRecord:
    return ParticipantRecord(
        conversation_id=row.conversation_id,
        user_id=row.user_id,
        role=row.role,
        joined_at=row.joined_at,
        is_muted=row.is_muted,
        last_read_at=row.last_read_at,
        name=name,
        profile_picture=picture,
    )


class ConversationStore:
    """Conversation, participant and message persistence returning typed records."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # -- units of work -------------------------------------------------

    def _unit(self, work: Callable[[], T]) -> Callable[[], T]:
        def _run() -> T:
            try:
                result = work()
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
            return result

        return _run

    def atomic(self, op_name: str, work: Callable[[], T]) -> T:
        """Run ``work`` and commit it as one transaction.

        Either every write inside ``work`` commits or none does.
        """
        return with_store_retry(op_name, self._unit(work), session=self.session)

    async def atomic_async(self, op_name: str, work: Callable[[], T]) -> T:
        """``atomic`` for coroutines; retry backoff suspends instead of blocking."""
        return await with_store_retry_async(op_name, self._unit(work), session=self.session)

    def read(self, op_name: str, query: Callable[[], T]) -> T:
        """Run a read-only callable with transient-failure retry."""
        return with_store_retry(op_name, query, session=self.session)

    async def read_async(self, op_name: str, query: Callable[[], T]) -> T:
        return await with_store_retry_async(op_name, query, session=self.session)

    # -- conversations -------------------------------------------------

    def create_conversation(
        self,
        kind: ConversationKind,
        *,
        group_id: int | None = None,
        channel_id: int | None = None,
        pair_key: str | None = None,
    ) -> ConversationRecord:
        row = Conversation(
            kind=kind.value,
            group_id=group_id,
            channel_id=channel_id,
            pair_key=pair_key,
        )
        self.session.add(row)
        self.session.flush()
        return _conversation_record(row)

    def get_conversation(self, conversation_id: int) -> ConversationRecord | None:
        row = self.session.get(Conversation, conversation_id)
        return _conversation_record(row) if row is not None else None

    def find_for_group(self, group_id: int) -> ConversationRecord | None:
        row = self.session.scalars(
            select(Conversation).where(Conversation.group_id == group_id)
        ).first()
        return _conversation_record(row) if row is not None else None

    def find_for_channel(self, channel_id: int) -> ConversationRecord | None:
        row = self.session.scalars(
            select(Conversation).where(Conversation.channel_id == channel_id)
        ).first()
        return _conversation_record(row) if row is not None else None

    def find_direct_between(self, user_a: int, user_b: int) -> ConversationRecord | None:
        """Return the direct chat between two users, if one exists."""
        row = self.session.scalars(
            select(Conversation).where(Conversation.pair_key == direct_pair_key(user_a, user_b))
        ).first()
        return _conversation_record(row) if row is not None else None

    def get_or_create_direct(self, user_a: int, user_b: int) -> tuple[ConversationRecord, bool]:
        """Return the pair's direct chat, creating it with both participants.

        A concurrent creator losing the unique ``pair_key`` race re-reads the
        winner's row, so a pair never ends up with two chats.
        """
        existing = self.find_direct_between(user_a, user_b)
        if existing is not None:
            return existing, False

        key = direct_pair_key(user_a, user_b)
        try:
            with self.session.begin_nested():
                record = self.create_conversation(ConversationKind.DIRECT, pair_key=key)
                for user_id in sorted({user_a, user_b}):
                    self.session.add(Participant(conversation_id=record.id, user_id=user_id))
                self.session.flush()
        except IntegrityError:
            logger.info("Direct chat %s created concurrently, reusing it", key)
            winner = self.find_direct_between(user_a, user_b)
            if winner is None:
                raise
            return winner, False
        return record, True

    def delete_conversation(self, conversation_id: int) -> None:
        self.session.execute(delete(Message).where(Message.conversation_id == conversation_id))
        self.session.execute(
            delete(Participant).where(Participant.conversation_id == conversation_id)
        )
        self.session.execute(delete(Conversation).where(Conversation.id == conversation_id))

    def list_for_user(
        self, user_id: int, kinds: Iterable[ConversationKind] | None = None
    ) -> list[ConversationRecord]:
        """Return every conversation the user participates in."""
        stmt = (
            select(Conversation)
            .join(Participant, Participant.conversation_id == Conversation.id)
            .where(Participant.user_id == user_id)
        )
        if kinds is not None:
            stmt = stmt.where(Conversation.kind.in_([kind.value for kind in kinds]))
        return [_conversation_record(row) for row in self.session.scalars(stmt.order_by(Conversation.id))]

    # -- participants --------------------------------------------------

    def add_participant(
        self, conversation_id: int, user_id: int, role: str | None = None
    ) -> ParticipantRecord:
        """Insert a membership edge.

        Raises:
            ConflictError: If the user is already a participant.
        """
        row = Participant(conversation_id=conversation_id, user_id=user_id, role=role)
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except IntegrityError as err:
            raise ConflictError(
                "User is already a member",
                data={"conversation_id": conversation_id, "user_id": user_id},
            ) from err
        return _participant_record(row)

    def ensure_participant(
        self, conversation_id: int, user_id: int, role: str | None = None
    ) -> bool:
        """Add the edge unless it exists; return True when a row was inserted."""
        if self.get_participant(conversation_id, user_id) is not None:
            return False
        self.add_participant(conversation_id, user_id, role)
        return True

    def remove_participant(self, conversation_id: int, user_id: int) -> bool:
        result = self.session.execute(
            delete(Participant).where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
            )
        )
        return result.rowcount > 0

    def get_participant(self, conversation_id: int, user_id: int) -> ParticipantRecord | None:
        row = self.session.scalars(
            select(Participant).where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
            )
        ).first()
        return _participant_record(row) if row is not None else None

    def list_participants(self, conversation_id: int) -> list[ParticipantRecord]:
        rows = self.session.execute(
            select(Participant, User.name, User.profile_picture)
            .join(User, User.id == Participant.user_id)
            .where(Participant.conversation_id == conversation_id)
            .order_by(Participant.joined_at, Participant.id)
        )
        return [_participant_record(row, name, picture) for row, name, picture in rows]

    def participant_ids(self, conversation_id: int) -> list[int]:
        return list(
            self.session.scalars(
                select(Participant.user_id)
                .where(Participant.conversation_id == conversation_id)
                .order_by(Participant.user_id)
            )
        )

    def set_participant_role(self, conversation_id: int, user_id: int, role: str) -> bool:
        result = self.session.execute(
            update(Participant)
            .where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
            )
            .values(role=role)
        )
        return result.rowcount > 0

    def set_muted(self, conversation_id: int, user_id: int, muted: bool) -> bool:
        result = self.session.execute(
            update(Participant)
            .where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
            )
            .values(is_muted=muted)
        )
        return result.rowcount > 0

    def touch_last_read(self, conversation_id: int, user_id: int) -> None:
        self.session.execute(
            update(Participant)
            .where(
                Participant.conversation_id == conversation_id,
                Participant.user_id == user_id,
            )
            .values(last_read_at=utcnow())
        )

    # -- messages ------------------------------------------------------

    def append_message(
        self,
        conversation_id: int,
        sender_id: int,
        *,
        message_type: str = "text",
        content: str | None = None,
        file_path: str | None = None,
        duration: int | None = None,
    ) -> MessageRecord:
        row = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            message_type=message_type,
            content=content,
            file_path=file_path,
            duration=duration,
        )
        self.session.add(row)
        self.session.flush()
        sender = self.session.get(User, sender_id)
        return _message_record(
            row,
            sender.name if sender else None,
            sender.profile_picture if sender else None,
        )

    def _select_messages(self):
        return (
            select(Message, User.name, User.profile_picture)
            .join(User, User.id == Message.sender_id)
            .execution_options(populate_existing=True)
        )

    def get_message(self, message_id: int) -> MessageRecord | None:
        row = self.session.execute(self._select_messages().where(Message.id == message_id)).first()
        if row is None:
            return None
        message, name, picture = row
        return _message_record(message, name, picture)

    def page_messages(self, conversation_id: int, limit: int, offset: int = 0) -> list[MessageRecord]:
        """Return one page counted from the newest message, in chronological order."""
        rows = self.session.execute(
            self._select_messages()
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        records = [_message_record(message, name, picture) for message, name, picture in rows]
        records.reverse()
        return records

    def last_message(self, conversation_id: int) -> MessageRecord | None:
        page = self.page_messages(conversation_id, limit=1)
        return page[0] if page else None

    def list_media(self, conversation_id: int, message_type: str | None = None) -> list[MessageRecord]:
        stmt = self._select_messages().where(
            Message.conversation_id == conversation_id,
            Message.message_type != "text",
        )
        if message_type:
            stmt = stmt.where(Message.message_type == message_type)
        rows = self.session.execute(stmt.order_by(Message.created_at.desc(), Message.id.desc()))
        return [_message_record(message, name, picture) for message, name, picture in rows]

    def delete_message(self, message_id: int, sender_id: int) -> bool:
        """Hard-delete a message; only its sender's id matches."""
        result = self.session.execute(
            delete(Message).where(Message.id == message_id, Message.sender_id == sender_id)
        )
        return result.rowcount > 0

    # -- delivery state ------------------------------------------------

    def mark_delivered(self, message_id: int, at: datetime | None = None) -> bool:
        """Set ``delivered_at`` once; return True only for the call that set it."""
        result = self.session.execute(
            update(Message)
            .where(Message.id == message_id, Message.delivered_at.is_(None))
            .values(delivered_at=at or utcnow())
        )
        return result.rowcount == 1

    def mark_delivered_for_viewer(self, conversation_id: int, viewer_id: int) -> int:
        """Pull-based delivery: stamp undelivered messages the viewer did not send."""
        result = self.session.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != viewer_id,
                Message.delivered_at.is_(None),
            )
            .values(delivered_at=utcnow())
        )
        return result.rowcount

    def mark_seen_bulk(self, conversation_id: int, viewer_id: int) -> tuple[int, datetime | None]:
        """Stamp every unseen message not sent by the viewer with one timestamp.

        Seen implies delivered, so missing ``delivered_at`` values are filled
        with the same timestamp. Already-set values are never touched.
        """
        stamp = utcnow()
        base = (
            Message.conversation_id == conversation_id,
            Message.sender_id != viewer_id,
            Message.seen_at.is_(None),
        )
        self.session.execute(
            update(Message)
            .where(*base, Message.delivered_at.is_(None))
            .values(delivered_at=stamp)
        )
        result = self.session.execute(update(Message).where(*base).values(seen_at=stamp))
        if result.rowcount == 0:
            return 0, None
        return result.rowcount, stamp

    def count_unseen(self, conversation_id: int, viewer_id: int) -> int:
        """Derived unread count: messages from others with no ``seen_at``."""
        return int(
            self.session.scalar(
                select(func.count(Message.id)).where(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != viewer_id,
                    Message.seen_at.is_(None),
                )
            )
            or 0
        )

    def count_unread_since(self, conversation_id: int, viewer_id: int, since: datetime | None) -> int:
        """Count messages from others created after ``since`` (all of them when None)."""
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != viewer_id,
        )
        if since is not None:
            stmt = stmt.where(Message.created_at > since)
        return int(self.session.scalar(stmt) or 0)
