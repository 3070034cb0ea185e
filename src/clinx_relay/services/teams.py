"""Teams, team membership and the member-capacity gate."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from clinx_relay.core.errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.core.settings import settings
from clinx_relay.db.time import as_utc, utcnow
from clinx_relay.models import Channel, Team, TeamInvite, TeamMember, User
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.services.channels import TEAM_MANAGER_ROLES, ChannelService
from clinx_relay.services.notifications import NotificationService

logger = logging.getLogger(__name__)

ASSIGNABLE_TEAM_ROLES = ("admin", "member")


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:50]
    return slug or "team"


def serialize_team(team: Team, **extra: Any) -> dict[str, Any]:
    created_at = as_utc(team.created_at)
    payload = {
        "id": team.id,
        "name": team.name,
        "slug": team.slug,
        "description": team.description,
        "owner_id": team.owner_id,
        "plan": team.plan,
        "member_limit": team.member_limit,
        "created_at": created_at.isoformat() if created_at else None,
    }
    payload.update(extra)
    return payload


@dataclass(frozen=True)
class Occupancy:
    """Seats used by a team: members plus live pending invites."""

    members: int
    pending: int
    limit: int

    @property
    def total(self) -> int:
        return self.members + self.pending

    def to_payload(self) -> dict[str, int]:
        return {
            "current_members": self.members,
            "pending_invites": self.pending,
            "total": self.total,
            "limit": self.limit,
        }


class CapacityGate:
    """Blocks invites and joins once a team's member limit is reached."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def occupancy(self, team: Team) -> Occupancy:
        members = self.db.scalar(
            select(func.count(TeamMember.id)).where(TeamMember.team_id == team.id)
        )
        pending = self.db.scalar(
            select(func.count(TeamInvite.id)).where(
                TeamInvite.team_id == team.id,
                TeamInvite.accepted_at.is_(None),
                TeamInvite.expires_at > utcnow(),
            )
        )
        return Occupancy(members=int(members or 0), pending=int(pending or 0), limit=team.member_limit)

    def check_new_seat(self, team: Team) -> Occupancy:
        """A new invite or direct add reserves a seat; pending invites count."""
        occupancy = self.occupancy(team)
        if occupancy.total >= occupancy.limit:
            raise CapacityError(
                "Team member limit reached. Cancel pending invites or upgrade your plan to add more members.",
                current=occupancy.members,
                limit=occupancy.limit,
                pending=occupancy.pending,
            )
        return occupancy

    def check_claim(self, team: Team) -> Occupancy:
        """Accepting an invite claims its reserved seat; only members count."""
        occupancy = self.occupancy(team)
        if occupancy.members >= occupancy.limit:
            raise CapacityError(
                "This team has reached its member limit. Please contact the team admin to upgrade their plan.",
                current=occupancy.members,
                limit=occupancy.limit,
            )
        return occupancy


class TeamService:
    def __init__(
        self,
        db: Session,
        registry: PresenceRegistry,
        dispatcher: Dispatcher,
        notifier: NotificationService | None = None,
    ) -> None:
        self.db = db
        self.channels = ChannelService(db, registry, dispatcher)
        self.store = self.channels.store
        self.gate = CapacityGate(db)
        self.notifier = notifier or NotificationService(db, dispatcher)

    # -- lookups -------------------------------------------------------

    def get_live_team(self, team_id: int) -> Team:
        team = self.db.get(Team, team_id)
        if team is None or team.deleted_at is not None:
            raise NotFoundError("Team not found", data={"team_id": team_id})
        return team

    def role_of(self, user_id: int, team_id: int) -> str | None:
        return self.db.scalar(
            select(TeamMember.role).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        )

    def require_role(self, user_id: int, team_id: int, roles: frozenset[str] | None = None) -> str:
        role = self.role_of(user_id, team_id)
        if role is None:
            raise AuthorizationError("You are not a member of this team", data={"team_id": team_id})
        if roles is not None and role not in roles:
            raise AuthorizationError("Admin access required", data={"team_id": team_id, "role": role})
        return role

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug, counter = base, 1
        while self.db.scalar(select(Team.id).where(Team.slug == slug)) is not None:
            slug = f"{base}-{counter}"
            counter += 1
        return slug

    # -- teams ---------------------------------------------------------

    async def create_team(self, actor_id: int, *, name: str, description: str | None = None) -> Team:
        """Create a team with its owner and default channels in one transaction."""
        name = (name or "").strip()
        if len(name) < 2:
            raise ValidationError("Team name must be at least 2 characters")
        owner = self.db.get(User, actor_id)
        if owner is None:
            raise NotFoundError("User not found", data={"user_id": actor_id})

        def _write() -> tuple[Team, list[Channel]]:
            team = Team(
                name=name,
                slug=self._unique_slug(name),
                description=description,
                owner_id=actor_id,
                member_limit=settings.default_member_limit,
            )
            self.db.add(team)
            self.db.flush()
            self.db.add(TeamMember(team_id=team.id, user_id=actor_id, role="owner"))
            owner.current_team_id = team.id
            self.db.flush()
            return team, self.channels.build_defaults(team.id, actor_id)

        team, defaults = await self.store.atomic_async("create_team", _write)
        logger.info("User %s created team %s (%s)", actor_id, team.id, team.slug)
        for channel in defaults:
            await self.channels.announce_joined(channel, [actor_id])
        return team

    def list_for_user(self, user_id: int) -> list[dict[str, Any]]:
        rows = self.db.execute(
            select(Team, TeamMember.role)
            .join(TeamMember, TeamMember.team_id == Team.id)
            .where(TeamMember.user_id == user_id, Team.deleted_at.is_(None))
            .order_by(Team.name)
        ).all()
        return [
            serialize_team(team, user_role=role, member_count=self.gate.occupancy(team).members)
            for team, role in rows
        ]

    def get_team(self, actor_id: int, team_id: int) -> dict[str, Any]:
        team = self.get_live_team(team_id)
        role = self.require_role(actor_id, team_id)
        occupancy = self.gate.occupancy(team)
        return serialize_team(team, user_role=role, occupancy=occupancy.to_payload())

    def update_team(
        self, actor_id: int, team_id: int, *, name: str | None = None, description: str | None = None
    ) -> Team:
        team = self.get_live_team(team_id)
        self.require_role(actor_id, team_id, TEAM_MANAGER_ROLES)
        if name is not None and len(name.strip()) < 2:
            raise ValidationError("Team name must be at least 2 characters")

        def _write() -> Team:
            if name is not None:
                team.name = name.strip()
            if description is not None:
                team.description = description
            self.db.flush()
            return team

        return self.store.atomic("update_team", _write)

    def delete_team(self, actor_id: int, team_id: int) -> None:
        """Soft-delete a team; only its owner may."""
        team = self.get_live_team(team_id)
        if team.owner_id != actor_id:
            raise AuthorizationError("Only the team owner can delete the team")

        def _write() -> tuple[list[int], list[int]]:
            team.deleted_at = utcnow()
            self.db.execute(
                update(User).where(User.current_team_id == team_id).values(current_team_id=None)
            )
            member_ids = list(
                self.db.scalars(select(TeamMember.user_id).where(TeamMember.team_id == team_id))
            )
            channel_ids = list(self.db.scalars(select(Channel.id).where(Channel.team_id == team_id)))
            return member_ids, channel_ids

        member_ids, channel_ids = self.store.atomic("delete_team", _write)
        for user_id in member_ids:
            self.channels.announce_left(channel_ids, user_id)
        logger.info("User %s deleted team %s", actor_id, team_id)

    def list_members(self, actor_id: int, team_id: int) -> list[dict[str, Any]]:
        self.get_live_team(team_id)
        self.require_role(actor_id, team_id)
        rows = self.db.execute(
            select(User, TeamMember.role, TeamMember.joined_at)
            .join(TeamMember, TeamMember.user_id == User.id)
            .where(TeamMember.team_id == team_id)
            .order_by(User.name)
        )
        result = []
        for user, role, joined_at in rows:
            joined = as_utc(joined_at)
            result.append(
                {
                    "id": user.id,
                    "name": user.name,
                    "email": user.email,
                    "profile_picture": user.profile_picture,
                    "active_status": user.active_status,
                    "role": role,
                    "joined_at": joined.isoformat() if joined else None,
                }
            )
        return result

    def enroll(self, team: Team, user: User, role: str) -> list[int]:
        """Membership, default channels and current team for a new member; flush only."""
        self.db.add(TeamMember(team_id=team.id, user_id=user.id, role=role))
        if user.current_team_id is None:
            user.current_team_id = team.id
        self.db.flush()
        return self.channels.join_defaults(team.id, user.id)

    async def announce_enrolled(self, channel_ids: list[int], user_id: int) -> None:
        for channel_id in channel_ids:
            channel = self.db.get(Channel, channel_id)
            if channel is not None:
                await self.channels.announce_joined(channel, [user_id])

    async def add_member(self, actor_id: int, team_id: int, user_id: int, role: str = "member") -> None:
        team = self.get_live_team(team_id)
        self.require_role(actor_id, team_id, TEAM_MANAGER_ROLES)
        if role not in ASSIGNABLE_TEAM_ROLES:
            raise ValidationError(f"Invalid role {role!r}", data={"allowed": list(ASSIGNABLE_TEAM_ROLES)})
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", data={"user_id": user_id})
        if self.role_of(user_id, team_id) is not None:
            raise ConflictError("This user is already a team member", data={"user_id": user_id})
        self.gate.check_new_seat(team)

        channel_ids = await self.store.atomic_async(
            "add_team_member", lambda: self.enroll(team, user, role)
        )
        logger.info("User %s added to team %s as %s", user_id, team_id, role)
        await self.announce_enrolled(channel_ids, user_id)
        await self.notifier.notify(
            user_id,
            "team_added",
            title="Added to Team",
            message=f"You were added to \"{team.name}\"",
            data={"team_id": team.id},
        )

    def remove_member(self, actor_id: int, team_id: int, user_id: int) -> None:
        """Remove a member and every channel edge they had in the team."""
        team = self.get_live_team(team_id)
        if actor_id != user_id:
            self.require_role(actor_id, team_id, TEAM_MANAGER_ROLES)
        if user_id == team.owner_id:
            raise AuthorizationError("The team owner cannot be removed")
        if self.role_of(user_id, team_id) is None:
            raise NotFoundError("Member not found", data={"user_id": user_id})

        def _write() -> list[int]:
            self.db.query(TeamMember).filter(
                TeamMember.team_id == team_id, TeamMember.user_id == user_id
            ).delete(synchronize_session=False)
            channel_ids = self.channels.leave_team_channels(team_id, user_id)
            self.db.execute(
                update(User)
                .where(User.id == user_id, User.current_team_id == team_id)
                .values(current_team_id=None)
            )
            return channel_ids

        channel_ids = self.store.atomic("remove_team_member", _write)
        self.channels.announce_left(channel_ids, user_id)
        logger.info("User %s removed from team %s", user_id, team_id)

    def change_member_role(self, actor_id: int, team_id: int, user_id: int, role: str) -> None:
        team = self.get_live_team(team_id)
        self.require_role(actor_id, team_id, TEAM_MANAGER_ROLES)
        if role not in ASSIGNABLE_TEAM_ROLES:
            raise ValidationError(f"Invalid role {role!r}", data={"allowed": list(ASSIGNABLE_TEAM_ROLES)})
        if user_id == team.owner_id:
            raise AuthorizationError("The owner's role cannot be changed")

        def _write() -> int:
            return self.db.execute(
                update(TeamMember)
                .where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
                .values(role=role)
            ).rowcount

        if not self.store.atomic("change_team_role", _write):
            raise NotFoundError("Member not found", data={"user_id": user_id})

    def switch_team(self, actor_id: int, team_id: int) -> Team:
        team = self.get_live_team(team_id)
        self.require_role(actor_id, team_id)

        def _write() -> None:
            user = self.db.get(User, actor_id)
            user.current_team_id = team_id
            self.db.flush()

        self.store.atomic("switch_team", _write)
        return team

    def capacity(self, actor_id: int, team_id: int) -> Occupancy:
        team = self.get_live_team(team_id)
        self.require_role(actor_id, team_id)
        return self.gate.occupancy(team)
