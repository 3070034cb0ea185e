"""Team-scoped channels.

Channels are always resolved inside the caller's current team. Default
channels enroll every team member and cannot be left, renamed or deleted.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinx_relay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.db.time import as_utc, utcnow
from clinx_relay.models import Channel, Conversation, Participant, TeamMember, User
from clinx_relay.models.channel import CHANNEL_TYPES, DEFAULT_CHANNELS
from clinx_relay.realtime import events
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.events import EventName
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.repositories.conversation_store import ConversationStore
from clinx_relay.repositories.records import ConversationKind, ConversationRecord
from clinx_relay.services.membership import ConversationRef, MembershipResolver

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[a-z0-9_-]+$")
TEAM_MANAGER_ROLES = frozenset({"owner", "admin"})


def normalize_channel_name(raw: str | None) -> str:
    """Lower-case, hyphenate whitespace and validate a channel name."""
    name = (raw or "").strip()
    if len(name) < 2:
        raise ValidationError("Channel name must be at least 2 characters")
    name = re.sub(r"\s+", "-", name.lower())
    if not _NAME_PATTERN.match(name):
        raise ValidationError(
            "Channel name can only contain letters, numbers, hyphens, and underscores"
        )
    return name


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def serialize_channel(channel: Channel, **extra: Any) -> dict[str, Any]:
    payload = {
        "id": channel.id,
        "team_id": channel.team_id,
        "name": channel.name,
        "description": channel.description,
        "type": channel.type,
        "is_default": channel.is_default,
        "is_archived": channel.is_archived,
        "created_by": channel.created_by,
        "created_at": _iso(channel.created_at),
    }
    payload.update(extra)
    return payload


class ChannelService:
    def __init__(
        self,
        db: Session,
        registry: PresenceRegistry,
        dispatcher: Dispatcher,
    ) -> None:
        self.db = db
        self.store = ConversationStore(db)
        self.resolver = MembershipResolver(db, self.store)
        self.registry = registry
        self.dispatcher = dispatcher

    # -- context -------------------------------------------------------

    def _current_team(self, user_id: int) -> tuple[int, str]:
        """Return (team id, team role) for the user's current team."""
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", data={"user_id": user_id})
        if user.current_team_id is None:
            raise ValidationError("Select a team first")
        role = self.resolver.team_role(user_id, user.current_team_id)
        if role is None:
            raise AuthorizationError(
                "You are not a member of this team", data={"team_id": user.current_team_id}
            )
        return user.current_team_id, role

    def _channel_in_team(self, actor_id: int, channel_id: int) -> tuple[Channel, str]:
        team_id, role = self._current_team(actor_id)
        channel = self.db.get(Channel, channel_id)
        if channel is None or channel.deleted_at is not None:
            raise NotFoundError("Channel not found", data={"channel_id": channel_id})
        if channel.team_id != team_id:
            raise AuthorizationError("Channel not in current team", data={"channel_id": channel_id})
        return channel, role

    def _conversation(self, channel_id: int) -> ConversationRecord:
        conversation = self.store.find_for_channel(channel_id)
        if conversation is None:
            raise NotFoundError("Channel not found", data={"channel_id": channel_id})
        return conversation

    def _name_taken(self, team_id: int, name: str, exclude_id: int | None = None) -> bool:
        stmt = select(Channel.id).where(
            Channel.team_id == team_id,
            func.lower(Channel.name) == name,
            Channel.deleted_at.is_(None),
        )
        if exclude_id is not None:
            stmt = stmt.where(Channel.id != exclude_id)
        return self.db.scalar(stmt) is not None

    def _team_member_ids(self, team_id: int) -> list[int]:
        return list(
            self.db.scalars(
                select(TeamMember.user_id).where(TeamMember.team_id == team_id).order_by(TeamMember.user_id)
            )
        )

    # -- building blocks used inside team transactions -------------------

    def build_channel(
        self,
        team_id: int,
        *,
        name: str,
        created_by: int,
        description: str | None = None,
        type_: str = "public",
        is_default: bool = False,
        member_ids: Iterable[int] = (),
    ) -> tuple[Channel, ConversationRecord]:
        """Insert a channel, its conversation and participants; flush only."""
        channel = Channel(
            team_id=team_id,
            name=name,
            description=description,
            type=type_,
            is_default=is_default,
            created_by=created_by,
        )
        self.db.add(channel)
        self.db.flush()
        conversation = self.store.create_conversation(ConversationKind.CHANNEL, channel_id=channel.id)
        self.store.add_participant(conversation.id, created_by, "admin")
        for user_id in member_ids:
            if user_id != created_by:
                self.store.ensure_participant(conversation.id, user_id, "member")
        return channel, conversation

    def build_defaults(self, team_id: int, owner_id: int) -> list[Channel]:
        return [
            self.build_channel(
                team_id, name=name, description=description, created_by=owner_id, is_default=True
            )[0]
            for name, description in DEFAULT_CHANNELS
        ]

    def join_defaults(self, team_id: int, user_id: int) -> list[int]:
        """Enroll a user in every default channel of a team; flush only."""
        channel_ids = list(
            self.db.scalars(
                select(Channel.id).where(
                    Channel.team_id == team_id,
                    Channel.is_default.is_(True),
                    Channel.deleted_at.is_(None),
                )
            )
        )
        for channel_id in channel_ids:
            conversation = self._conversation(channel_id)
            self.store.ensure_participant(conversation.id, user_id, "member")
        return channel_ids

    def leave_team_channels(self, team_id: int, user_id: int) -> list[int]:
        """Drop every channel edge a user has in a team; flush only."""
        channel_ids = list(self.db.scalars(select(Channel.id).where(Channel.team_id == team_id)))
        for channel_id in channel_ids:
            conversation = self.store.find_for_channel(channel_id)
            if conversation is not None:
                self.store.remove_participant(conversation.id, user_id)
        return channel_ids

    async def announce_joined(self, channel: Channel, user_ids: Iterable[int]) -> None:
        room = RoomKey.channel(channel.id)
        for user_id in user_ids:
            if self.registry.join_user(user_id, room):
                await self.dispatcher.dispatch(
                    events.to_user(EventName.CHANNEL_ADDED, user_id, {"channel": serialize_channel(channel)})
                )

    def announce_left(self, channel_ids: Iterable[int], user_id: int) -> None:
        for channel_id in channel_ids:
            self.registry.leave_user(user_id, RoomKey.channel(channel_id))

    # -- operations ----------------------------------------------------

    async def create_channel(
        self,
        actor_id: int,
        *,
        name: str,
        description: str | None = None,
        type_: str = "public",
    ) -> Channel:
        team_id, _ = self._current_team(actor_id)
        clean = normalize_channel_name(name)
        if type_ not in CHANNEL_TYPES:
            raise ValidationError(f"Invalid channel type {type_!r}", data={"allowed": list(CHANNEL_TYPES)})
        if self._name_taken(team_id, clean):
            raise ConflictError("A channel with this name already exists", data={"name": clean})
        member_ids = self._team_member_ids(team_id) if type_ == "public" else []

        channel, _ = await self.store.atomic_async(
            "create_channel",
            lambda: self.build_channel(
                team_id,
                name=clean,
                description=description.strip() if description else None,
                type_=type_,
                created_by=actor_id,
                member_ids=member_ids,
            ),
        )
        logger.info("User %s created channel #%s in team %s", actor_id, clean, team_id)
        await self.announce_joined(channel, {actor_id, *member_ids})
        return channel

    def list_channels(self, actor_id: int) -> list[dict[str, Any]]:
        """Channels the caller participates in, defaults first, with unread counts."""
        team_id, _ = self._current_team(actor_id)
        rows = self.db.execute(
            select(Channel, Participant)
            .join(Conversation, Conversation.channel_id == Channel.id)
            .join(Participant, Participant.conversation_id == Conversation.id)
            .where(
                Participant.user_id == actor_id,
                Channel.team_id == team_id,
                Channel.deleted_at.is_(None),
                Channel.is_archived.is_(False),
            )
            .order_by(Channel.is_default.desc(), Channel.name)
        ).all()
        result = []
        for channel, participant in rows:
            result.append(
                serialize_channel(
                    channel,
                    member_count=len(self.store.participant_ids(participant.conversation_id)),
                    is_muted=participant.is_muted,
                    last_read_at=_iso(participant.last_read_at),
                    unread_count=self.store.count_unread_since(
                        participant.conversation_id, actor_id, participant.last_read_at
                    ),
                )
            )
        return result

    def get_channel(self, actor_id: int, channel_id: int) -> dict[str, Any]:
        channel, _ = self._channel_in_team(actor_id, channel_id)
        conversation = self._conversation(channel_id)
        membership = self.resolver.resolve_conversation(actor_id, conversation)
        return serialize_channel(
            channel,
            chat_id=conversation.id,
            member_count=len(self.store.participant_ids(conversation.id)),
            is_member=membership.is_member,
        )

    def _require_manager(self, actor_id: int, channel: Channel, team_role: str, action: str) -> None:
        if team_role in TEAM_MANAGER_ROLES or channel.created_by == actor_id:
            return
        raise AuthorizationError(f"Only team admins or the channel creator can {action}")

    def update_channel(
        self,
        actor_id: int,
        channel_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
        type_: str | None = None,
        is_archived: bool | None = None,
    ) -> Channel:
        channel, role = self._channel_in_team(actor_id, channel_id)
        self._require_manager(actor_id, channel, role, "update this channel")
        if channel.is_default and (name or type_ or is_archived):
            raise ValidationError("Cannot modify name, type or archive state of default channels")
        clean = normalize_channel_name(name) if name else None
        if clean and self._name_taken(channel.team_id, clean, exclude_id=channel.id):
            raise ConflictError("A channel with this name already exists", data={"name": clean})
        if type_ is not None and type_ not in CHANNEL_TYPES:
            raise ValidationError(f"Invalid channel type {type_!r}", data={"allowed": list(CHANNEL_TYPES)})

        def _write() -> Channel:
            if clean:
                channel.name = clean
            if description is not None:
                channel.description = description.strip()
            if type_ is not None:
                channel.type = type_
            if is_archived is not None:
                channel.is_archived = is_archived
            self.db.flush()
            return channel

        return self.store.atomic("update_channel", _write)

    def delete_channel(self, actor_id: int, channel_id: int) -> None:
        """Soft-delete a non-default channel."""
        channel, role = self._channel_in_team(actor_id, channel_id)
        if channel.is_default:
            raise ValidationError("Cannot delete default channels")
        self._require_manager(actor_id, channel, role, "delete this channel")
        member_ids = self.store.participant_ids(self._conversation(channel_id).id)

        def _write() -> None:
            channel.deleted_at = utcnow()
            self.db.flush()

        self.store.atomic("delete_channel", _write)
        for user_id in member_ids:
            self.registry.leave_user(user_id, RoomKey.channel(channel_id))
        logger.info("User %s deleted channel %s", actor_id, channel_id)

    async def join_channel(self, actor_id: int, channel_id: int) -> Channel:
        channel, role = self._channel_in_team(actor_id, channel_id)
        if channel.type == "private" and role not in TEAM_MANAGER_ROLES:
            raise AuthorizationError("Private channels require admin to add members")
        conversation = self._conversation(channel_id)
        await self.store.atomic_async(
            "join_channel", lambda: self.store.ensure_participant(conversation.id, actor_id, "member")
        )
        await self.announce_joined(channel, [actor_id])
        return channel

    def leave_channel(self, actor_id: int, channel_id: int) -> Channel:
        channel, _ = self._channel_in_team(actor_id, channel_id)
        if channel.is_default:
            raise ValidationError("Cannot leave default channels")
        conversation = self._conversation(channel_id)
        removed = self.store.atomic(
            "leave_channel", lambda: self.store.remove_participant(conversation.id, actor_id)
        )
        if not removed:
            raise NotFoundError("You are not a member of this channel", data={"channel_id": channel_id})
        self.announce_left([channel_id], actor_id)
        return channel

    def list_members(self, actor_id: int, channel_id: int) -> list[dict[str, Any]]:
        self._channel_in_team(actor_id, channel_id)
        membership = self.resolver.require_member(actor_id, ConversationRef.channel(channel_id))
        return [p.to_payload() for p in self.store.list_participants(membership.conversation.id)]

    def set_muted(self, actor_id: int, channel_id: int, muted: bool) -> None:
        self._channel_in_team(actor_id, channel_id)
        conversation = self._conversation(channel_id)
        changed = self.store.atomic(
            "mute_channel", lambda: self.store.set_muted(conversation.id, actor_id, muted)
        )
        if not changed:
            raise NotFoundError("You are not a member of this channel", data={"channel_id": channel_id})
