"""Group lifecycle, membership, join requests and invite links.

Every membership change also updates the live rooms of the affected user,
so sessions connected before the change start (or stop) receiving the
group's events without reconnecting.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import fields
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from clinx_relay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.core.settings import settings
from clinx_relay.db.time import as_utc, utcnow
from clinx_relay.models import Group, GroupInviteLink, GroupPermission, JoinRequest, User
from clinx_relay.models.group import GROUP_ROLES, GROUP_TYPES
from clinx_relay.realtime import events
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.events import EventName
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.repositories.conversation_store import ConversationStore
from clinx_relay.repositories.records import ConversationKind, ConversationRecord
from clinx_relay.services.membership import (
    ConversationRef,
    Membership,
    MembershipResolver,
    PermissionSet,
)
from clinx_relay.services.notifications import NotificationService

logger = logging.getLogger(__name__)

_ROLE_ORDER = {role: index for index, role in enumerate(GROUP_ROLES)}
_EDITABLE_FIELDS = ("name", "description", "image", "disappearing_days", "group_type")
PERMISSION_FLAGS = tuple(f.name for f in fields(PermissionSet))


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def serialize_group(group: Group) -> dict[str, Any]:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "image": group.image,
        "group_type": group.group_type,
        "created_by": group.created_by,
        "disappearing_days": group.disappearing_days,
        "created_at": _iso(group.created_at),
    }


def serialize_join_request(row: JoinRequest, name: str | None = None) -> dict[str, Any]:
    return {
        "id": row.id,
        "group_id": row.group_id,
        "user_id": row.user_id,
        "name": name,
        "status": row.status,
        "created_at": _iso(row.created_at),
        "decided_at": _iso(row.decided_at),
    }


def serialize_invite_link(row: GroupInviteLink) -> dict[str, Any]:
    return {
        "id": row.id,
        "group_id": row.group_id,
        "token": row.token,
        "url": f"{settings.app_url.rstrip('/')}/groups/join/{row.token}",
        "created_by": row.created_by,
        "expires_at": _iso(row.expires_at),
        "created_at": _iso(row.created_at),
    }


class GroupService:
    def __init__(
        self,
        db: Session,
        registry: PresenceRegistry,
        dispatcher: Dispatcher,
        notifier: NotificationService | None = None,
    ) -> None:
        self.db = db
        self.store = ConversationStore(db)
        self.resolver = MembershipResolver(db, self.store)
        self.registry = registry
        self.dispatcher = dispatcher
        self.notifier = notifier or NotificationService(db, dispatcher)

    # -- lookups -------------------------------------------------------

    def _group(self, group_id: int) -> Group:
        group = self.db.get(Group, group_id)
        if group is None:
            raise NotFoundError("Group not found", data={"group_id": group_id})
        return group

    def _user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found", data={"user_id": user_id})
        return user

    def _membership(self, actor_id: int, group_id: int) -> Membership:
        return self.resolver.resolve(actor_id, ConversationRef.group(group_id))

    def _require_admin(self, actor_id: int, group_id: int, action: str) -> Membership:
        membership = self._membership(actor_id, group_id)
        if not membership.is_admin:
            raise AuthorizationError(f"Only admins can {action}", data={"group_id": group_id})
        return membership

    def _flags(self, group_id: int) -> PermissionSet:
        return PermissionSet.from_row(self.db.get(GroupPermission, group_id))

    def _admin_ids(self, conversation: ConversationRecord) -> list[int]:
        return [
            p.user_id for p in self.store.list_participants(conversation.id) if p.role == "admin"
        ]

    # -- live side effects ---------------------------------------------

    async def _on_joined(self, group: Group, conversation: ConversationRecord, user_id: int) -> None:
        self.registry.join_user(user_id, RoomKey.group(group.id))
        await self.dispatcher.dispatch(
            events.to_user(
                EventName.GROUP_ADDED,
                user_id,
                {"group_id": group.id, "group": serialize_group(group), "chat_id": conversation.id},
            )
        )

    async def _on_left(self, group_id: int, user_id: int) -> None:
        self.registry.leave_user(user_id, RoomKey.group(group_id))
        await self.dispatcher.dispatch(
            events.to_user(EventName.GROUP_REMOVED, user_id, {"group_id": group_id})
        )

    # -- lifecycle -----------------------------------------------------

    async def create_group(
        self,
        actor_id: int,
        *,
        name: str,
        description: str | None = None,
        image: str | None = None,
        group_type: str = "public",
        disappearing_days: int = 0,
        permissions: dict[str, bool] | None = None,
    ) -> tuple[Group, ConversationRecord]:
        """Create a group with its conversation; the creator becomes admin."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name is required")
        if group_type not in GROUP_TYPES:
            raise ValidationError(f"Invalid group type {group_type!r}", data={"allowed": list(GROUP_TYPES)})
        flags = self._clean_flags(permissions or {})
        self._user(actor_id)

        def _write() -> tuple[Group, ConversationRecord]:
            group = Group(
                name=name,
                description=description,
                image=image,
                group_type=group_type,
                created_by=actor_id,
                disappearing_days=max(0, disappearing_days),
            )
            self.db.add(group)
            self.db.flush()
            self.db.add(GroupPermission(group_id=group.id, **flags))
            conversation = self.store.create_conversation(ConversationKind.GROUP, group_id=group.id)
            self.store.add_participant(conversation.id, actor_id, "admin")
            return group, conversation

        group, conversation = await self.store.atomic_async("create_group", _write)
        logger.info("User %s created group %s", actor_id, group.id)
        await self._on_joined(group, conversation, actor_id)
        return group, conversation

    def get_group(self, actor_id: int, group_id: int) -> dict[str, Any]:
        """Group details with ordered members, permissions and the caller's role."""
        membership = self._membership(actor_id, group_id)
        if not membership.is_member:
            raise AuthorizationError("You are not a member of this group", data={"group_id": group_id})
        group = self._group(group_id)
        members = sorted(
            self.store.list_participants(membership.conversation.id),
            key=lambda p: (_ROLE_ORDER.get(p.role or "member", len(_ROLE_ORDER)), (p.name or "").lower()),
        )
        payload = serialize_group(group)
        payload.update(
            {
                "chat_id": membership.conversation.id,
                "members": [m.to_payload() for m in members],
                "permissions": self._flags(group_id).to_payload(),
                "user_role": membership.role,
            }
        )
        return payload

    def list_for_user(self, user_id: int) -> list[Group]:
        groups, _ = self.resolver.room_snapshot(user_id)
        if not groups:
            return []
        return list(self.db.scalars(select(Group).where(Group.id.in_(groups)).order_by(Group.name)))

    def update_group(self, actor_id: int, group_id: int, changes: dict[str, Any]) -> Group:
        membership = self._membership(actor_id, group_id)
        if not membership.allows("edit_settings"):
            raise AuthorizationError(
                "You are not allowed to edit this group", data={"group_id": group_id}
            )
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError("Unknown group fields", data={"fields": sorted(unknown)})
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Group name is required")
        if "group_type" in changes and changes["group_type"] not in GROUP_TYPES:
            raise ValidationError(f"Invalid group type {changes['group_type']!r}")

        def _write() -> Group:
            group = self._group(group_id)
            for key, value in changes.items():
                setattr(group, key, value.strip() if key == "name" else value)
            self.db.flush()
            return group

        return self.store.atomic("update_group", _write)

    async def delete_group(self, actor_id: int, group_id: int) -> None:
        membership = self._require_admin(actor_id, group_id, "delete the group")
        conversation = membership.conversation
        member_ids = self.store.participant_ids(conversation.id)

        def _write() -> None:
            self.store.delete_conversation(conversation.id)
            self.db.execute(delete(JoinRequest).where(JoinRequest.group_id == group_id))
            self.db.execute(delete(GroupInviteLink).where(GroupInviteLink.group_id == group_id))
            self.db.execute(delete(GroupPermission).where(GroupPermission.group_id == group_id))
            self.db.execute(delete(Group).where(Group.id == group_id))

        await self.store.atomic_async("delete_group", _write)
        logger.info("User %s deleted group %s", actor_id, group_id)
        for user_id in member_ids:
            await self._on_left(group_id, user_id)

    # -- members -------------------------------------------------------

    async def add_member(
        self, actor_id: int, group_id: int, user_id: int, role: str = "member"
    ) -> dict[str, Any]:
        """Add a user, or file a join request when approval is required.

        Returns ``{"status": "added"}`` or ``{"status": "pending", "request": ...}``.
        """
        membership = self._membership(actor_id, group_id)
        if not membership.allows("add_members"):
            raise AuthorizationError(
                "Only admins, moderators or permissioned users can add members",
                data={"group_id": group_id},
            )
        if role not in GROUP_ROLES:
            raise ValidationError(f"Invalid role {role!r}", data={"allowed": list(GROUP_ROLES)})
        if role != "member" and not membership.is_admin:
            raise AuthorizationError("Only admins can grant elevated roles")
        user = self._user(user_id)
        group = self._group(group_id)
        conversation = membership.conversation
        if self.store.get_participant(conversation.id, user_id) is not None:
            raise ConflictError("User is already a member", data={"user_id": user_id})

        if self._flags(group_id).admin_approval and not membership.is_elevated:
            request = await self._file_join_request(group, conversation, user, requested_by=actor_id)
            return {"status": "pending", "request": request}

        await self.store.atomic_async(
            "add_group_member", lambda: self.store.add_participant(conversation.id, user_id, role)
        )
        actor = self.db.get(User, actor_id)
        await self._on_joined(group, conversation, user_id)
        await self.notifier.notify(
            user_id,
            "group_invite",
            title="Added to Group",
            message=f"{actor.name if actor else 'Someone'} added you to the group \"{group.name}\"",
            data={
                "group_id": group.id,
                "group_name": group.name,
                "added_by": actor_id,
                "chat_id": conversation.id,
            },
        )
        return {"status": "added"}

    async def remove_member(self, actor_id: int, group_id: int, user_id: int) -> None:
        """Remove a member; admins may remove others, anyone may leave."""
        membership = self._membership(actor_id, group_id)
        is_self = actor_id == user_id
        if not membership.is_member or (not is_self and not membership.is_admin):
            raise AuthorizationError("Only admins can remove members", data={"group_id": group_id})
        group = self._group(group_id)
        if group.created_by == user_id and not is_self:
            raise AuthorizationError("Cannot remove the group creator")

        removed = await self.store.atomic_async(
            "remove_group_member",
            lambda: self.store.remove_participant(membership.conversation.id, user_id),
        )
        if not removed:
            raise NotFoundError("Member not found", data={"user_id": user_id})
        await self._on_left(group_id, user_id)

    def change_role(self, actor_id: int, group_id: int, user_id: int, role: str) -> None:
        if role not in GROUP_ROLES:
            raise ValidationError(
                "Invalid role. Use: admin, moderator, or member", data={"allowed": list(GROUP_ROLES)}
            )
        membership = self._require_admin(actor_id, group_id, "change member roles")
        changed = self.store.atomic(
            "change_group_role",
            lambda: self.store.set_participant_role(membership.conversation.id, user_id, role),
        )
        if not changed:
            raise NotFoundError("Member not found", data={"user_id": user_id})

    # -- permissions ---------------------------------------------------

    def _clean_flags(self, flags: dict[str, Any]) -> dict[str, bool]:
        unknown = set(flags) - set(PERMISSION_FLAGS)
        if unknown:
            raise ValidationError("Unknown permission flags", data={"flags": sorted(unknown)})
        return {key: bool(value) for key, value in flags.items()}

    def get_permissions(self, actor_id: int, group_id: int) -> PermissionSet:
        membership = self._membership(actor_id, group_id)
        if not membership.is_member:
            raise AuthorizationError("You are not a member of this group", data={"group_id": group_id})
        return self._flags(group_id)

    async def update_permissions(
        self, actor_id: int, group_id: int, flags: dict[str, Any]
    ) -> PermissionSet:
        self._require_admin(actor_id, group_id, "update permissions")
        clean = self._clean_flags(flags)

        def _write() -> None:
            row = self.db.get(GroupPermission, group_id)
            if row is None:
                self.db.add(GroupPermission(group_id=group_id, **clean))
            else:
                for key, value in clean.items():
                    setattr(row, key, value)
            self.db.flush()

        await self.store.atomic_async("update_group_permissions", _write)
        permissions = self._flags(group_id)
        await self.dispatcher.dispatch(
            events.to_room(
                EventName.GROUP_PERMISSIONS_UPDATED,
                RoomKey.group(group_id),
                {"group_id": group_id, "permissions": permissions.to_payload()},
            )
        )
        return permissions

    # -- join requests -------------------------------------------------

    async def _file_join_request(
        self,
        group: Group,
        conversation: ConversationRecord,
        user: User,
        *,
        requested_by: int,
        via_invite: bool = False,
    ) -> dict[str, Any]:
        existing = self.db.scalar(
            select(JoinRequest).where(
                JoinRequest.group_id == group.id,
                JoinRequest.user_id == user.id,
                JoinRequest.status == "pending",
            )
        )
        if existing is not None:
            return serialize_join_request(existing, user.name)

        def _write() -> JoinRequest:
            row = JoinRequest(group_id=group.id, user_id=user.id, status="pending")
            self.db.add(row)
            self.db.flush()
            return row

        request = await self.store.atomic_async("create_join_request", _write)
        requester = self.db.get(User, requested_by)
        suffix = " via invite" if via_invite else ""
        for admin_id in self._admin_ids(conversation):
            await self.notifier.notify(
                admin_id,
                "group_join_request",
                title="Join Request",
                message=f"{requester.name if requester else user.name} requested to join \"{group.name}\"{suffix}",
                data={"group_id": group.id, "request_id": request.id, "user_id": user.id},
            )
        return serialize_join_request(request, user.name)

    async def request_join(self, actor_id: int, group_id: int) -> dict[str, Any]:
        """Join directly, or file a request when the group needs approval."""
        group = self._group(group_id)
        membership = self._membership(actor_id, group_id)
        if membership.is_member:
            raise ConflictError("You are already a member", data={"group_id": group_id})
        user = self._user(actor_id)
        conversation = membership.conversation
        if self._flags(group_id).admin_approval:
            request = await self._file_join_request(group, conversation, user, requested_by=actor_id)
            return {"status": "pending", "request": request}

        await self.store.atomic_async(
            "join_group", lambda: self.store.ensure_participant(conversation.id, actor_id, "member")
        )
        await self._on_joined(group, conversation, actor_id)
        return {"status": "joined"}

    def list_join_requests(self, actor_id: int, group_id: int) -> list[dict[str, Any]]:
        self._require_admin(actor_id, group_id, "view join requests")
        rows = self.db.execute(
            select(JoinRequest, User.name)
            .join(User, User.id == JoinRequest.user_id)
            .where(JoinRequest.group_id == group_id, JoinRequest.status == "pending")
            .order_by(JoinRequest.created_at, JoinRequest.id)
        )
        return [serialize_join_request(row, name) for row, name in rows]

    def _decide(self, actor_id: int, group_id: int, request_id: int, status: str) -> JoinRequest:
        """Move a pending request to a terminal status; the update is guarded."""
        row = self.db.get(JoinRequest, request_id)
        if row is None or row.group_id != group_id:
            raise NotFoundError("Request not found", data={"request_id": request_id})
        result = self.db.execute(
            update(JoinRequest)
            .where(JoinRequest.id == request_id, JoinRequest.status == "pending")
            .values(status=status, decided_at=utcnow(), decided_by=actor_id)
        )
        if result.rowcount == 0:
            raise ConflictError(
                "Request was already decided",
                data={"request_id": request_id, "status": row.status},
            )
        return row

    async def approve_request(self, actor_id: int, group_id: int, request_id: int) -> None:
        membership = self._require_admin(actor_id, group_id, "approve join requests")
        conversation = membership.conversation

        def _write() -> int:
            row = self._decide(actor_id, group_id, request_id, "approved")
            self.store.ensure_participant(conversation.id, row.user_id, "member")
            return row.user_id

        user_id = await self.store.atomic_async("approve_join_request", _write)
        group = self._group(group_id)
        logger.info("Join request %s approved for user %s in group %s", request_id, user_id, group_id)
        await self._on_joined(group, conversation, user_id)
        await self.notifier.notify(
            user_id,
            "group_join_approved",
            title="Request Approved",
            message=f"Your request to join \"{group.name}\" was approved",
            data={"group_id": group_id},
        )

    def reject_request(self, actor_id: int, group_id: int, request_id: int) -> None:
        self._require_admin(actor_id, group_id, "reject join requests")
        self.store.atomic(
            "reject_join_request", lambda: self._decide(actor_id, group_id, request_id, "rejected")
        )

    # -- invite links --------------------------------------------------

    def create_invite_link(
        self, actor_id: int, group_id: int, expires_at: datetime | None = None
    ) -> GroupInviteLink:
        membership = self._membership(actor_id, group_id)
        if not membership.allows("invite_link"):
            raise AuthorizationError("Not allowed to create invite links", data={"group_id": group_id})
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise ValidationError("Invite expiry must be in the future")

        def _write() -> GroupInviteLink:
            row = GroupInviteLink(
                group_id=group_id,
                token=secrets.token_hex(settings.group_invite_token_bytes),
                created_by=actor_id,
                expires_at=expires_at,
            )
            self.db.add(row)
            self.db.flush()
            return row

        return self.store.atomic("create_group_invite", _write)

    def list_invite_links(self, actor_id: int, group_id: int) -> list[GroupInviteLink]:
        self._require_admin(actor_id, group_id, "view invite links")
        return list(
            self.db.scalars(
                select(GroupInviteLink)
                .where(GroupInviteLink.group_id == group_id)
                .order_by(GroupInviteLink.created_at.desc(), GroupInviteLink.id.desc())
            )
        )

    def delete_invite_link(self, actor_id: int, group_id: int, invite_id: int) -> None:
        self._require_admin(actor_id, group_id, "delete invite links")
        deleted = self.store.atomic(
            "delete_group_invite",
            lambda: self.db.execute(
                delete(GroupInviteLink).where(
                    GroupInviteLink.id == invite_id, GroupInviteLink.group_id == group_id
                )
            ).rowcount,
        )
        if not deleted:
            raise NotFoundError("Invite not found", data={"invite_id": invite_id})

    async def join_by_token(self, actor_id: int, token: str) -> dict[str, Any]:
        """Redeem a reusable invite link."""
        link = self.db.scalar(select(GroupInviteLink).where(GroupInviteLink.token == token))
        if link is None:
            raise NotFoundError("Invalid invite token")
        if link.expires_at is not None and as_utc(link.expires_at) < utcnow():
            raise ConflictError("Invite has expired", data={"group_id": link.group_id})

        group = self._group(link.group_id)
        membership = self._membership(actor_id, group.id)
        if membership.is_member:
            raise ConflictError("You are already a member", data={"group_id": group.id})
        user = self._user(actor_id)
        conversation = membership.conversation

        if self._flags(group.id).admin_approval:
            request = await self._file_join_request(
                group, conversation, user, requested_by=actor_id, via_invite=True
            )
            return {"status": "pending", "group_id": group.id, "request": request}

        await self.store.atomic_async(
            "join_group_by_token",
            lambda: self.store.ensure_participant(conversation.id, actor_id, "member"),
        )
        await self.notifier.notify(
            actor_id,
            "group_joined",
            title="Joined Group",
            message=f"You joined the group \"{group.name}\"",
            data={"group_id": group.id},
        )
        await self._on_joined(group, conversation, actor_id)
        return {"status": "joined", "group_id": group.id}
