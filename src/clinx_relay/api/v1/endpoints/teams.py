"""Team endpoints: lifecycle, members, capacity and invites."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from clinx_relay.schemas.team import (
    CapacityResponse,
    TeamCreate,
    TeamInviteCreate,
    TeamMemberAdd,
    TeamRoleChange,
    TeamUpdate,
)
from clinx_relay.services.teams import serialize_team

from ..dependencies import CurrentUserDep, InviteServiceDep, TeamServiceDep

router = APIRouter(prefix="/teams", tags=["teams"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_team(
    body: TeamCreate, current_user: CurrentUserDep, service: TeamServiceDep
) -> dict[str, Any]:
    team = await service.create_team(current_user.id, name=body.name, description=body.description)
    return serialize_team(team, user_role="owner")


@router.get("/")
def list_teams(current_user: CurrentUserDep, service: TeamServiceDep) -> list[dict[str, Any]]:
    return service.list_for_user(current_user.id)


@router.get("/{team_id}")
def get_team(
    team_id: int, current_user: CurrentUserDep, service: TeamServiceDep
) -> dict[str, Any]:
    return service.get_team(current_user.id, team_id)


@router.patch("/{team_id}")
def update_team(
    team_id: int, body: TeamUpdate, current_user: CurrentUserDep, service: TeamServiceDep
) -> dict[str, Any]:
    team = service.update_team(
        current_user.id, team_id, name=body.name, description=body.description
    )
    return serialize_team(team)


@router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(team_id: int, current_user: CurrentUserDep, service: TeamServiceDep) -> None:
    service.delete_team(current_user.id, team_id)


@router.post("/{team_id}/switch")
def switch_team(
    team_id: int, current_user: CurrentUserDep, service: TeamServiceDep
) -> dict[str, Any]:
    return serialize_team(service.switch_team(current_user.id, team_id))


@router.get("/{team_id}/capacity", response_model=CapacityResponse)
def get_capacity(
    team_id: int, current_user: CurrentUserDep, service: TeamServiceDep
) -> dict[str, int]:
    return service.capacity(current_user.id, team_id).to_payload()


@router.get("/{team_id}/members")
def list_members(
    team_id: int, current_user: CurrentUserDep, service: TeamServiceDep
) -> list[dict[str, Any]]:
    return service.list_members(current_user.id, team_id)


@router.post("/{team_id}/members", status_code=status.HTTP_204_NO_CONTENT)
async def add_member(
    team_id: int, body: TeamMemberAdd, current_user: CurrentUserDep, service: TeamServiceDep
) -> None:
    await service.add_member(current_user.id, team_id, body.user_id, body.role)


@router.delete("/{team_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    team_id: int, user_id: int, current_user: CurrentUserDep, service: TeamServiceDep
) -> None:
    service.remove_member(current_user.id, team_id, user_id)


@router.put("/{team_id}/members/{user_id}/role", status_code=status.HTTP_204_NO_CONTENT)
def change_member_role(
    team_id: int,
    user_id: int,
    body: TeamRoleChange,
    current_user: CurrentUserDep,
    service: TeamServiceDep,
) -> None:
    service.change_member_role(current_user.id, team_id, user_id, body.role)


@router.post("/{team_id}/invites", status_code=status.HTTP_201_CREATED)
async def create_invite(
    team_id: int, body: TeamInviteCreate, current_user: CurrentUserDep, service: InviteServiceDep
) -> dict[str, Any]:
    return await service.create_invite(current_user.id, team_id, email=body.email, role=body.role)


@router.get("/{team_id}/invites")
def list_invites(
    team_id: int, current_user: CurrentUserDep, service: InviteServiceDep
) -> list[dict[str, Any]]:
    return service.list_pending(current_user.id, team_id)
