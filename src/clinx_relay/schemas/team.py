"""Team and invite Pydantic schemas."""

from pydantic import BaseModel, Field


class TeamCreate(BaseModel):
    """Schema for creating a team owned by the caller."""

    name: str = Field(..., min_length=2, max_length=100)
    description: str | None = None


class TeamUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    description: str | None = None


class TeamMemberAdd(BaseModel):
    user_id: int
    role: str = "member"


class TeamRoleChange(BaseModel):
    role: str


class TeamInviteCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    role: str = "member"


class InviteAccept(BaseModel):
    token: str = Field(..., min_length=1)


class CapacityResponse(BaseModel):
    """Seats used by a team against its member limit."""

    current_members: int
    pending_invites: int
    total: int
    limit: int
