"""Group chat endpoints: lifecycle, members, permissions, join requests and invite links."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, status

from clinx_relay.db.time import utcnow
from clinx_relay.schemas.group import (
    GroupCreate,
    GroupInviteLinkCreate,
    GroupMemberAdd,
    GroupPermissionsUpdate,
    GroupRoleChange,
    GroupUpdate,
)
from clinx_relay.services.groups import serialize_group, serialize_invite_link

from ..dependencies import CurrentUserDep, GroupServiceDep

router = APIRouter(prefix="/groups", tags=["groups"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_group(
    body: GroupCreate, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    """Create a group; listed members are added by the creator."""
    group, conversation = await service.create_group(
        current_user.id,
        name=body.name,
        description=body.description,
        image=body.image,
        group_type=body.group_type,
    )
    for user_id in dict.fromkeys(body.member_ids):
        if user_id != current_user.id:
            await service.add_member(current_user.id, group.id, user_id)
    payload = serialize_group(group)
    payload["chat_id"] = conversation.id
    return payload


@router.get("/")
def list_groups(current_user: CurrentUserDep, service: GroupServiceDep) -> list[dict[str, Any]]:
    return [serialize_group(group) for group in service.list_for_user(current_user.id)]


@router.get("/{group_id}")
def get_group(
    group_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    return service.get_group(current_user.id, group_id)


@router.patch("/{group_id}")
def update_group(
    group_id: int, body: GroupUpdate, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    group = service.update_group(current_user.id, group_id, body.model_dump(exclude_unset=True))
    return serialize_group(group)


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(group_id: int, current_user: CurrentUserDep, service: GroupServiceDep) -> None:
    await service.delete_group(current_user.id, group_id)


@router.post("/{group_id}/members")
async def add_member(
    group_id: int, body: GroupMemberAdd, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    return await service.add_member(current_user.id, group_id, body.user_id, body.role)


@router.delete("/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    group_id: int, user_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> None:
    await service.remove_member(current_user.id, group_id, user_id)


@router.put("/{group_id}/members/{user_id}/role", status_code=status.HTTP_204_NO_CONTENT)
def change_role(
    group_id: int,
    user_id: int,
    body: GroupRoleChange,
    current_user: CurrentUserDep,
    service: GroupServiceDep,
) -> None:
    service.change_role(current_user.id, group_id, user_id, body.role)


@router.get("/{group_id}/permissions")
def get_permissions(
    group_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, bool]:
    return service.get_permissions(current_user.id, group_id).to_payload()


@router.put("/{group_id}/permissions")
async def update_permissions(
    group_id: int,
    body: GroupPermissionsUpdate,
    current_user: CurrentUserDep,
    service: GroupServiceDep,
) -> dict[str, bool]:
    flags = await service.update_permissions(
        current_user.id, group_id, body.model_dump(exclude_none=True)
    )
    return flags.to_payload()


@router.post("/{group_id}/join")
async def request_join(
    group_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    return await service.request_join(current_user.id, group_id)


@router.get("/{group_id}/requests")
def list_join_requests(
    group_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> list[dict[str, Any]]:
    return service.list_join_requests(current_user.id, group_id)


@router.post("/{group_id}/requests/{request_id}/approve", status_code=status.HTTP_204_NO_CONTENT)
async def approve_request(
    group_id: int, request_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> None:
    await service.approve_request(current_user.id, group_id, request_id)


@router.post("/{group_id}/requests/{request_id}/reject", status_code=status.HTTP_204_NO_CONTENT)
def reject_request(
    group_id: int, request_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> None:
    service.reject_request(current_user.id, group_id, request_id)


@router.post("/{group_id}/invites", status_code=status.HTTP_201_CREATED)
def create_invite_link(
    group_id: int,
    body: GroupInviteLinkCreate,
    current_user: CurrentUserDep,
    service: GroupServiceDep,
) -> dict[str, Any]:
    expires_at = (
        utcnow() + timedelta(hours=body.expires_in_hours) if body.expires_in_hours else None
    )
    return serialize_invite_link(service.create_invite_link(current_user.id, group_id, expires_at))


@router.get("/{group_id}/invites")
def list_invite_links(
    group_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> list[dict[str, Any]]:
    return [serialize_invite_link(row) for row in service.list_invite_links(current_user.id, group_id)]


@router.delete("/{group_id}/invites/{invite_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invite_link(
    group_id: int, invite_id: int, current_user: CurrentUserDep, service: GroupServiceDep
) -> None:
    service.delete_invite_link(current_user.id, group_id, invite_id)


@router.post("/join/{token}")
async def join_by_token(
    token: str, current_user: CurrentUserDep, service: GroupServiceDep
) -> dict[str, Any]:
    return await service.join_by_token(current_user.id, token)
