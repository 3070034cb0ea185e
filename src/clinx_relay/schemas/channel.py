"""Channel-related Pydantic schemas."""

from pydantic import BaseModel, Field


class ChannelCreate(BaseModel):
    """Schema for creating a channel in the caller's current team."""

    name: str = Field(..., min_length=2, max_length=80)
    description: str | None = None
    type: str = "public"


class ChannelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=80)
    description: str | None = None
    type: str | None = None
    is_archived: bool | None = None


class ChannelMute(BaseModel):
    muted: bool = True
