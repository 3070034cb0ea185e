"""User-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field


class UserResponse(BaseModel):
    """Schema for user information returned by the API."""

    id: int
    name: str
    email: str
    profile_picture: str | None = None
    active_status: str
    current_team_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class StatusUpdate(BaseModel):
    status: str = Field(..., description="available, away or dnd")


class DeviceRegister(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=255)
    platform: str = "web"


class DeviceResponse(BaseModel):
    id: int
    device_token: str
    platform: str

    model_config = ConfigDict(from_attributes=True)
