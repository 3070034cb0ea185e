"""SQLAlchemy models for ad-hoc permissioned groups."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinx_relay.db.session import Base
from clinx_relay.db.time import utcnow

GROUP_ROLES = ("admin", "moderator", "member")
GROUP_TYPES = ("public", "private")
JOIN_REQUEST_STATUSES = ("pending", "approved", "rejected")


class Group(Base):
    """Group metadata; messages and members live on its conversation."""

    __tablename__ = "chat_group"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_type: Mapped[str] = mapped_column(String(16), nullable=False, default="public")
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("user_account.id"), nullable=False)
    disappearing_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    permissions: Mapped[GroupPermission] = relationship(
        "GroupPermission",
        back_populates="group",
        cascade="all, delete-orphan",
        uselist=False,
    )


class GroupPermission(Base):
    """Flags applied to plain members; admins and moderators override them."""

    __tablename__ = "group_permission"

    group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("chat_group.id", ondelete="CASCADE"), primary_key=True
    )
    edit_settings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    send_message: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    add_members: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invite_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Content protection; enforced by clients, stored here.
    screenshot_block: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    forward_block: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    copy_paste_block: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    watermark_docs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    group: Mapped[Group] = relationship("Group", back_populates="permissions")


class JoinRequest(Base):
    """Request to join a group that requires admin approval."""

    __tablename__ = "group_join_request"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("chat_group.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[int | None] = mapped_column(Integer, nullable=True)


class GroupInviteLink(Base):
    """Reusable join token valid until expiry or deletion."""

    __tablename__ = "group_invite_link"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("chat_group.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("user_account.id"), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
