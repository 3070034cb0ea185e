"""SQLAlchemy models for user identities and their registered devices."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinx_relay.db.session import Base
from clinx_relay.db.time import utcnow

ACTIVE_STATUSES = ("available", "away", "dnd")


class User(Base):
    """Chat identity with a presence status and an optional current team."""

    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    profile_picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    active_status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")
    # Scopes channel and teammate visibility; plain column to avoid a cycle with team.owner_id.
    current_team_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    devices: Mapped[list[Device]] = relationship(
        "Device",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class Device(Base):
    """Push-capable device registered by a user."""

    __tablename__ = "device"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, default="web")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="devices")
