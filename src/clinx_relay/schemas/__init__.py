"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .channel import ChannelCreate, ChannelMute, ChannelUpdate
from .group import (
    GroupCreate,
    GroupInviteLinkCreate,
    GroupMemberAdd,
    GroupPermissionsUpdate,
    GroupRoleChange,
    GroupUpdate,
)
from .message import DirectMessageCreate, MessageCreate
from .realtime import ClientEvent, ServerEvent
from .team import (
    CapacityResponse,
    InviteAccept,
    TeamCreate,
    TeamInviteCreate,
    TeamMemberAdd,
    TeamRoleChange,
    TeamUpdate,
)
from .user import DeviceRegister, DeviceResponse, StatusUpdate, UserResponse

__all__ = [
    "ChannelCreate", "ChannelMute", "ChannelUpdate",
    "GroupCreate", "GroupInviteLinkCreate", "GroupMemberAdd",
    "GroupPermissionsUpdate", "GroupRoleChange", "GroupUpdate",
    "DirectMessageCreate", "MessageCreate",
    "ClientEvent", "ServerEvent",
    "CapacityResponse", "InviteAccept", "TeamCreate", "TeamInviteCreate",
    "TeamMemberAdd", "TeamRoleChange", "TeamUpdate",
    "DeviceRegister", "DeviceResponse", "StatusUpdate", "UserResponse",
]
