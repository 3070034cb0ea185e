"""Team invite endpoints addressed by invite id or token."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from clinx_relay.schemas.team import InviteAccept
from clinx_relay.services.teams import serialize_team

from ..dependencies import CurrentUserDep, InviteServiceDep

router = APIRouter(prefix="/invites", tags=["invites"])


@router.get("/mine")
def my_invites(current_user: CurrentUserDep, service: InviteServiceDep) -> list[dict[str, Any]]:
    return service.my_pending(current_user.id)


@router.get("/validate/{token}")
def validate_invite(token: str, service: InviteServiceDep) -> dict[str, Any]:
    """Public lookup used by the invite landing page."""
    return service.describe(token)


@router.post("/accept")
async def accept_invite(
    body: InviteAccept, current_user: CurrentUserDep, service: InviteServiceDep
) -> dict[str, Any]:
    team = await service.accept(current_user.id, body.token)
    return serialize_team(team)


@router.post("/{invite_id}/resend")
def resend_invite(
    invite_id: int, current_user: CurrentUserDep, service: InviteServiceDep
) -> dict[str, Any]:
    return service.resend(current_user.id, invite_id)


@router.delete("/{invite_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_invite(
    invite_id: int, current_user: CurrentUserDep, service: InviteServiceDep
) -> None:
    service.cancel(current_user.id, invite_id)
