"""User profile, presence and device endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from clinx_relay.schemas.user import DeviceRegister, DeviceResponse, StatusUpdate, UserResponse
from clinx_relay.services import users as user_service

from ..dependencies import CurrentUserDep, RegistryDep, SessionDep

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
def read_me(current_user: CurrentUserDep) -> UserResponse:
    return UserResponse.model_validate(current_user)


@router.put("/me/status", response_model=UserResponse)
def update_status(
    body: StatusUpdate, current_user: CurrentUserDep, db: SessionDep
) -> UserResponse:
    user = user_service.update_status(db, current_user.id, body.status)
    return UserResponse.model_validate(user)


@router.get("/online")
def online_users(current_user: CurrentUserDep, registry: RegistryDep) -> dict[str, list[int]]:
    return {"user_ids": sorted(registry.online_users())}


@router.get("/me/devices", response_model=list[DeviceResponse])
def list_devices(current_user: CurrentUserDep, db: SessionDep) -> list[DeviceResponse]:
    return [DeviceResponse.model_validate(d) for d in user_service.list_devices(db, current_user.id)]


@router.post("/me/devices", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
def register_device(
    body: DeviceRegister, current_user: CurrentUserDep, db: SessionDep
) -> DeviceResponse:
    device = user_service.register_device(db, current_user.id, body.device_token, body.platform)
    return DeviceResponse.model_validate(device)


@router.delete("/me/devices/{device_token}", status_code=status.HTTP_204_NO_CONTENT)
def remove_device(device_token: str, current_user: CurrentUserDep, db: SessionDep) -> None:
    user_service.remove_device(db, current_user.id, device_token)


@router.get("/{user_id}", response_model=UserResponse)
def read_user(user_id: int, current_user: CurrentUserDep, db: SessionDep) -> UserResponse:
    return UserResponse.model_validate(user_service.require_user(db, user_id))
