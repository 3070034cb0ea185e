"""Channel endpoints scoped to the caller's current team."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from clinx_relay.schemas.channel import ChannelCreate, ChannelMute, ChannelUpdate
from clinx_relay.services.channels import serialize_channel

from ..dependencies import ChannelServiceDep, CurrentUserDep

router = APIRouter(prefix="/channels", tags=["channels"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_channel(
    body: ChannelCreate, current_user: CurrentUserDep, service: ChannelServiceDep
) -> dict[str, Any]:
    channel = await service.create_channel(
        current_user.id, name=body.name, description=body.description, type_=body.type
    )
    return serialize_channel(channel)


@router.get("/")
def list_channels(
    current_user: CurrentUserDep, service: ChannelServiceDep
) -> list[dict[str, Any]]:
    return service.list_channels(current_user.id)


@router.get("/{channel_id}")
def get_channel(
    channel_id: int, current_user: CurrentUserDep, service: ChannelServiceDep
) -> dict[str, Any]:
    return service.get_channel(current_user.id, channel_id)


@router.patch("/{channel_id}")
def update_channel(
    channel_id: int, body: ChannelUpdate, current_user: CurrentUserDep, service: ChannelServiceDep
) -> dict[str, Any]:
    channel = service.update_channel(
        current_user.id,
        channel_id,
        name=body.name,
        description=body.description,
        type_=body.type,
        is_archived=body.is_archived,
    )
    return serialize_channel(channel)


@router.delete("/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_channel(
    channel_id: int, current_user: CurrentUserDep, service: ChannelServiceDep
) -> None:
    service.delete_channel(current_user.id, channel_id)


@router.post("/{channel_id}/join")
async def join_channel(
    channel_id: int, current_user: CurrentUserDep, service: ChannelServiceDep
) -> dict[str, Any]:
    return serialize_channel(await service.join_channel(current_user.id, channel_id))


@router.post("/{channel_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_channel(
    channel_id: int, current_user: CurrentUserDep, service: ChannelServiceDep
) -> None:
    service.leave_channel(current_user.id, channel_id)


@router.get("/{channel_id}/members")
def list_members(
    channel_id: int, current_user: CurrentUserDep, service: ChannelServiceDep
) -> list[dict[str, Any]]:
    return service.list_members(current_user.id, channel_id)


@router.put("/{channel_id}/mute", status_code=status.HTTP_204_NO_CONTENT)
def mute_channel(
    channel_id: int, body: ChannelMute, current_user: CurrentUserDep, service: ChannelServiceDep
) -> None:
    service.set_muted(current_user.id, channel_id, body.muted)
