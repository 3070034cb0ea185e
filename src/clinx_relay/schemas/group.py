"""Group-related Pydantic schemas."""

from pydantic import BaseModel, Field


class GroupCreate(BaseModel):
    """Schema for creating a group chat."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    image: str | None = None
    group_type: str = "public"
    member_ids: list[int] = Field(default_factory=list)


class GroupUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    image: str | None = None
    group_type: str | None = None
    disappearing_days: int | None = Field(default=None, ge=0)


class GroupMemberAdd(BaseModel):
    user_id: int
    role: str = "member"


class GroupRoleChange(BaseModel):
    role: str


class GroupPermissionsUpdate(BaseModel):
    """Partial update of group permission flags; omitted flags are kept."""

    edit_settings: bool | None = None
    send_message: bool | None = None
    add_members: bool | None = None
    invite_link: bool | None = None
    admin_approval: bool | None = None
    screenshot_block: bool | None = None
    forward_block: bool | None = None
    copy_paste_block: bool | None = None
    watermark_docs: bool | None = None


class GroupInviteLinkCreate(BaseModel):
    expires_in_hours: int | None = Field(default=None, gt=0)
