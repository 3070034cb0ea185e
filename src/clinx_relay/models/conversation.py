"""Models unifying direct chats, groups and channels as conversations.

Every message lives in exactly one ``Conversation``. Membership is a
``Participant`` row; leaving or removal hard-deletes the row.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from clinx_relay.db.session import Base
from clinx_relay.db.time import utcnow

CONVERSATION_KINDS = ("direct", "group", "channel")


class Conversation(Base):
    """Stable identity for a stream of messages."""

    __tablename__ = "conversation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    # "<low>:<high>" user ids; unique so concurrent creators converge on one direct chat.
    pair_key: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    group_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("chat_group.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    channel_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("channel.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Participant(Base):
    """Membership edge linking a user to a conversation."""

    __tablename__ = "participant"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Groups: admin|moderator|member. Channels: admin|member. Direct chats: NULL.
    role: Mapped[str | None] = mapped_column(String(16), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    is_muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
