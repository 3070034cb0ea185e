"""SQLAlchemy model for team-scoped channels."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clinx_relay.db.session import Base
from clinx_relay.db.time import utcnow

CHANNEL_TYPES = ("public", "private", "dm")
DEFAULT_CHANNELS = (
    ("general", "General discussion for the whole team"),
    ("announcements", "Team-wide announcements"),
)


class Channel(Base):
    """Named conversation inside a team.

    Default channels auto-enroll every team member and can be neither left
    nor deleted. Names are unique per team among non-deleted channels; the
    service layer enforces that because the rule depends on ``deleted_at``.
    """

    __tablename__ = "channel"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("team.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="public")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("user_account.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
