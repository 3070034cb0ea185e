"""Membership and permission resolution for every conversation kind.

Resolution is a pure read. It fails closed: without a participant edge a
user is not a member, whatever their team membership says, except for a
team's default channels, which every team member belongs to.
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinx_relay.core.errors import AuthorizationError, NotFoundError
from clinx_relay.models import (
    Channel,
    Conversation,
    GroupPermission,
    Participant,
    Team,
    TeamMember,
)
from clinx_relay.repositories.conversation_store import ConversationStore
from clinx_relay.repositories.records import ConversationKind, ConversationRecord

ELEVATED_GROUP_ROLES = frozenset({"admin", "moderator"})


@dataclass(frozen=True)
class ConversationRef:
    """Client reference: a direct chat by conversation id, groups and channels by their own id."""

    kind: ConversationKind
    id: int

    @classmethod
    def direct(cls, conversation_id: int) -> ConversationRef:
        return cls(ConversationKind.DIRECT, int(conversation_id))

    @classmethod
    def group(cls, group_id: int) -> ConversationRef:
        return cls(ConversationKind.GROUP, int(group_id))

    @classmethod
    def channel(cls, channel_id: int) -> ConversationRef:
        return cls(ConversationKind.CHANNEL, int(channel_id))


@dataclass(frozen=True)
class PermissionSet:
    edit_settings: bool = False
    send_message: bool = True
    add_members: bool = False
    invite_link: bool = False
    admin_approval: bool = False
    screenshot_block: bool = False
    forward_block: bool = False
    copy_paste_block: bool = False
    watermark_docs: bool = False

    @classmethod
    def from_row(cls, row: GroupPermission | None) -> PermissionSet:
        if row is None:
            return cls()
        return cls(**{f.name: bool(getattr(row, f.name)) for f in fields(cls)})

    def for_role(self, role: str | None) -> PermissionSet:
        """Merge the stored flags with a role; role grants always win."""
        if role == "admin":
            return replace(
                self,
                edit_settings=True,
                send_message=True,
                add_members=True,
                invite_link=True,
                admin_approval=False,
            )
        if role == "moderator":
            return replace(self, send_message=True, add_members=True, admin_approval=False)
        return self

    def to_payload(self) -> dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class Membership:
    """Answer to "may this actor act in this conversation?"."""

    conversation: ConversationRecord
    is_member: bool
    role: str | None = None
    permissions: PermissionSet | None = None
    read_only: bool = False

    @property
    def is_admin(self) -> bool:
        return self.is_member and self.role == "admin"

    @property
    def is_elevated(self) -> bool:
        return self.is_member and self.role in ELEVATED_GROUP_ROLES

    @property
    def can_send(self) -> bool:
        if not self.is_member or self.read_only:
            return False
        return self.permissions is None or self.permissions.send_message

    def allows(self, flag: str) -> bool:
        return self.is_member and self.permissions is not None and bool(getattr(self.permissions, flag))

    def to_payload(self) -> dict[str, Any]:
        return {
            "is_member": self.is_member,
            "role": self.role,
            "permissions": self.permissions.to_payload() if self.permissions else None,
        }


class MembershipResolver:
    """Resolves ``(actor, conversation)`` to a ``Membership``."""

    def __init__(self, db: Session, store: ConversationStore | None = None) -> None:
        self.db = db
        self.store = store or ConversationStore(db)

    def conversation_for(self, ref: ConversationRef) -> ConversationRecord:
        """Return the conversation behind ``ref``.

        Raises:
            NotFoundError: If no such conversation exists.
        """
        if ref.kind is ConversationKind.GROUP:
            conversation = self.store.find_for_group(ref.id)
        elif ref.kind is ConversationKind.CHANNEL:
            conversation = self.store.find_for_channel(ref.id)
            channel = self.db.get(Channel, ref.id)
            if channel is None or channel.deleted_at is not None:
                conversation = None
        else:
            conversation = self.store.get_conversation(ref.id)
            if conversation is not None and conversation.kind is not ConversationKind.DIRECT:
                conversation = None
        if conversation is None:
            raise NotFoundError(
                f"{ref.kind.value.capitalize()} not found",
                data={"kind": ref.kind.value, "id": ref.id},
            )
        return conversation

    def resolve(self, actor_id: int, ref: ConversationRef) -> Membership:
        conversation = self.conversation_for(ref)
        return self.resolve_conversation(actor_id, conversation)

    def resolve_conversation(self, actor_id: int, conversation: ConversationRecord) -> Membership:
        if conversation.kind is ConversationKind.DIRECT:
            pair = conversation.direct_pair or ()
            return Membership(conversation=conversation, is_member=actor_id in pair)

        participant = self.store.get_participant(conversation.id, actor_id)

        if conversation.kind is ConversationKind.GROUP:
            if participant is None:
                return Membership(conversation=conversation, is_member=False)
            flags = PermissionSet.from_row(self.db.get(GroupPermission, conversation.group_id))
            return Membership(
                conversation=conversation,
                is_member=True,
                role=participant.role or "member",
                permissions=flags.for_role(participant.role),
            )

        channel = self.db.get(Channel, conversation.channel_id)
        if channel is None or channel.deleted_at is not None:
            return Membership(conversation=conversation, is_member=False)
        if self.team_role(actor_id, channel.team_id) is None:
            return Membership(conversation=conversation, is_member=False)
        if participant is None and not channel.is_default:
            return Membership(conversation=conversation, is_member=False)
        return Membership(
            conversation=conversation,
            is_member=True,
            role=(participant.role if participant else None) or "member",
            read_only=channel.is_archived,
        )

    def require_member(self, actor_id: int, ref: ConversationRef) -> Membership:
        """Resolve and fail with AuthorizationError for non-members."""
        membership = self.resolve(actor_id, ref)
        if not membership.is_member:
            raise AuthorizationError(
                f"You are not a member of this {ref.kind.value}",
                data={"kind": ref.kind.value, "id": ref.id},
            )
        return membership

    def team_role(self, user_id: int, team_id: int) -> str | None:
        """Return the user's role in a live team, or None."""
        return self.db.scalar(
            select(TeamMember.role)
            .join(Team, Team.id == TeamMember.team_id)
            .where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
                Team.deleted_at.is_(None),
            )
        )

    def room_snapshot(self, user_id: int) -> tuple[list[int], list[int]]:
        """Group ids and live channel ids the user currently participates in."""
        rows = self.db.execute(
            select(Conversation.group_id, Conversation.channel_id)
            .join(Participant, Participant.conversation_id == Conversation.id)
            .outerjoin(Channel, Channel.id == Conversation.channel_id)
            .where(Participant.user_id == user_id, Channel.deleted_at.is_(None))
        ).all()
        groups = sorted(gid for gid, _ in rows if gid is not None)
        channels = sorted(cid for _, cid in rows if cid is not None)
        return groups, channels
