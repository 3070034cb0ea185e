"""Team invitations: single-use, time-limited tokens gated by team capacity."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from clinx_relay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.core.settings import settings
from clinx_relay.db.retry import with_store_retry
from clinx_relay.db.time import as_utc, utcnow
from clinx_relay.models import Team, TeamInvite, User
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.services.channels import TEAM_MANAGER_ROLES
from clinx_relay.services.notifications import NotificationService
from clinx_relay.services.teams import ASSIGNABLE_TEAM_ROLES, TeamService

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return secrets.token_hex(settings.team_invite_token_bytes)


def _expiry() -> datetime:
    return utcnow() + timedelta(hours=settings.team_invite_ttl_hours)


def serialize_invite(
    invite: TeamInvite,
    *,
    team: Team | None = None,
    invited_by_name: str | None = None,
    include_token: bool = False,
) -> dict[str, Any]:
    expires_at = as_utc(invite.expires_at)
    created_at = as_utc(invite.created_at)
    payload: dict[str, Any] = {
        "id": invite.id,
        "team_id": invite.team_id,
        "email": invite.email,
        "role": invite.role,
        "invited_by": invite.invited_by,
        "invited_by_name": invited_by_name,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }
    if team is not None:
        payload["team_name"] = team.name
        payload["team_slug"] = team.slug
    if include_token:
        payload["token"] = invite.token
    return payload


def _live_pending():
    return (TeamInvite.accepted_at.is_(None), TeamInvite.expires_at > utcnow())


class InviteService:
    def __init__(
        self,
        db: Session,
        registry: PresenceRegistry,
        dispatcher: Dispatcher,
        notifier: NotificationService | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier or NotificationService(db, dispatcher)
        self.teams = TeamService(db, registry, dispatcher, self.notifier)
        self.store = self.teams.store

    def _find_pending(self, team_id: int, email: str) -> TeamInvite | None:
        return self.db.scalar(
            select(TeamInvite).where(
                TeamInvite.team_id == team_id,
                func.lower(TeamInvite.email) == email.lower(),
                *_live_pending(),
            )
        )

    def _managed_invite(self, actor_id: int, invite_id: int) -> TeamInvite:
        invite = self.db.get(TeamInvite, invite_id)
        if invite is None:
            raise NotFoundError("Invite not found", data={"invite_id": invite_id})
        self.teams.require_role(actor_id, invite.team_id, TEAM_MANAGER_ROLES)
        return invite

    async def create_invite(
        self, actor_id: int, team_id: int, *, email: str, role: str = "member"
    ) -> dict[str, Any]:
        """Issue (or refresh) an invite for an e-mail address.

        A fresh invite reserves a seat, so the capacity gate counts members
        plus live pending invites. Refreshing an existing pending invite for
        the same address reuses its seat.
        """
        team = self.teams.get_live_team(team_id)
        self.teams.require_role(actor_id, team_id, TEAM_MANAGER_ROLES)
        email = (email or "").strip()
        if "@" not in email:
            raise ValidationError("A valid email is required")
        if role not in ASSIGNABLE_TEAM_ROLES:
            raise ValidationError(f"Invalid role {role!r}", data={"allowed": list(ASSIGNABLE_TEAM_ROLES)})

        invitee = self.db.scalar(select(User).where(func.lower(User.email) == email.lower()))
        if invitee is not None and self.teams.role_of(invitee.id, team_id) is not None:
            raise ConflictError("This user is already a team member", data={"email": email})

        existing = self._find_pending(team_id, email)
        if existing is None:
            self.teams.gate.check_new_seat(team)

        def _write() -> tuple[TeamInvite, bool]:
            if existing is not None:
                existing.token = _new_token()
                existing.expires_at = _expiry()
                existing.invited_by = actor_id
                existing.role = role
                self.db.flush()
                return existing, True
            invite = TeamInvite(
                team_id=team_id,
                email=email,
                token=_new_token(),
                role=role,
                invited_by=actor_id,
                expires_at=_expiry(),
            )
            self.db.add(invite)
            self.db.flush()
            return invite, False

        invite, refreshed = await self.store.atomic_async("create_team_invite", _write)
        logger.info(
            "Team %s invite %s %s for %s", team_id, invite.id, "refreshed" if refreshed else "issued", email
        )

        if invitee is not None:
            inviter = self.db.get(User, actor_id)
            await self.notifier.notify(
                invitee.id,
                "team_invite",
                title="Team Invitation",
                message=f"{inviter.name if inviter else 'Someone'} invited you to join \"{team.name}\"",
                data={"team_id": team_id, "invite_id": invite.id, "token": invite.token},
            )
        payload = serialize_invite(invite, team=team, include_token=True)
        payload["updated"] = refreshed
        return payload

    def list_pending(self, actor_id: int, team_id: int) -> list[dict[str, Any]]:
        self.teams.get_live_team(team_id)
        self.teams.require_role(actor_id, team_id)
        rows = with_store_retry(
            "list_team_invites",
            lambda: self.db.execute(
                select(TeamInvite, User.name)
                .outerjoin(User, User.id == TeamInvite.invited_by)
                .where(TeamInvite.team_id == team_id, *_live_pending())
                .order_by(TeamInvite.created_at.desc(), TeamInvite.id.desc())
            ).all(),
            session=self.db,
        )
        return [serialize_invite(invite, invited_by_name=name) for invite, name in rows]

    def cancel(self, actor_id: int, invite_id: int) -> None:
        invite = self._managed_invite(actor_id, invite_id)
        self.store.atomic("cancel_team_invite", lambda: self.db.delete(invite))
        logger.info("Team invite %s cancelled by user %s", invite_id, actor_id)

    def resend(self, actor_id: int, invite_id: int) -> dict[str, Any]:
        invite = self._managed_invite(actor_id, invite_id)
        if invite.accepted_at is not None:
            raise ConflictError("Invite already used", data={"invite_id": invite_id})

        def _write() -> TeamInvite:
            invite.token = _new_token()
            invite.expires_at = _expiry()
            self.db.flush()
            return invite

        self.store.atomic("resend_team_invite", _write)
        return serialize_invite(invite, include_token=True)

    def validate_token(self, token: str) -> tuple[TeamInvite, Team]:
        """Return the invite and its team, or raise when it cannot be used."""
        row = self.db.execute(
            select(TeamInvite, Team)
            .join(Team, Team.id == TeamInvite.team_id)
            .where(TeamInvite.token == token, Team.deleted_at.is_(None))
        ).first()
        if row is None:
            raise NotFoundError("Invalid invite token")
        invite, team = row
        if invite.accepted_at is not None:
            raise ConflictError("Invite already used", data={"invite_id": invite.id})
        if as_utc(invite.expires_at) < utcnow():
            raise ConflictError("Invite has expired", data={"invite_id": invite.id})
        return invite, team

    def describe(self, token: str) -> dict[str, Any]:
        invite, team = self.validate_token(token)
        inviter = self.db.get(User, invite.invited_by)
        return serialize_invite(invite, team=team, invited_by_name=inviter.name if inviter else None)

    def _consume(self, invite_id: int) -> None:
        claimed = self.db.execute(
            update(TeamInvite)
            .where(TeamInvite.id == invite_id, TeamInvite.accepted_at.is_(None))
            .values(accepted_at=utcnow())
        ).rowcount
        if not claimed:
            raise ConflictError("Invite already used", data={"invite_id": invite_id})

    async def accept(self, actor_id: int, token: str) -> Team:
        """Accept an invite on behalf of the signed-in user.

        Capacity is checked against current members only; the invite's own
        pending seat is being claimed. When the check fails the invite stays
        pending.
        """
        invite, team = self.validate_token(token)
        user = self.db.get(User, actor_id)
        if user is None:
            raise NotFoundError("User not found", data={"user_id": actor_id})
        if user.email.lower() != invite.email.lower():
            raise AuthorizationError("This invite was sent to a different email address")

        if self.teams.role_of(actor_id, team.id) is not None:
            await self.store.atomic_async(
                "consume_team_invite", lambda: self._consume(invite.id)
            )
            return team

        self.teams.gate.check_claim(team)

        def _write() -> list[int]:
            self._consume(invite.id)
            return self.teams.enroll(team, user, invite.role)

        channel_ids = await self.store.atomic_async("accept_team_invite", _write)
        logger.info("User %s accepted invite %s into team %s", actor_id, invite.id, team.id)
        await self.teams.announce_enrolled(channel_ids, actor_id)
        if team.owner_id != actor_id:
            await self.notifier.notify(
                team.owner_id,
                "team_join",
                title="New Team Member",
                message=f"{user.name} joined \"{team.name}\"",
                data={"team_id": team.id, "user_id": actor_id},
            )
        return team

    def my_pending(self, user_id: int) -> list[dict[str, Any]]:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found", data={"user_id": user_id})
        rows = self.db.execute(
            select(TeamInvite, Team, User.name)
            .join(Team, Team.id == TeamInvite.team_id)
            .outerjoin(User, User.id == TeamInvite.invited_by)
            .where(
                func.lower(TeamInvite.email) == user.email.lower(),
                Team.deleted_at.is_(None),
                *_live_pending(),
            )
            .order_by(TeamInvite.created_at.desc(), TeamInvite.id.desc())
        ).all()
        return [
            serialize_invite(invite, team=team, invited_by_name=name, include_token=True)
            for invite, team, name in rows
        ]


def sweep_expired(db: Session) -> int:
    """Delete expired, unaccepted invites and return how many were removed."""

    def _work() -> int:
        removed = db.execute(
            delete(TeamInvite).where(
                TeamInvite.accepted_at.is_(None),
                TeamInvite.expires_at < utcnow(),
            )
        ).rowcount
        db.commit()
        return removed

    return with_store_retry("sweep_expired_invites", _work, session=db)
