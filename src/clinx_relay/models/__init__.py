"""SQLAlchemy models for the Clinx relay."""

from .channel import Channel
from .conversation import Conversation, Participant
from .group import Group, GroupInviteLink, GroupPermission, JoinRequest
from .message import Message
from .notification import Notification
from .team import Team, TeamInvite, TeamMember
from .user import Device, User

__all__ = [
    "Channel",
    "Conversation", "Participant",
    "Group", "GroupInviteLink", "GroupPermission", "JoinRequest",
    "Message",
    "Notification",
    "Team", "TeamInvite", "TeamMember",
    "User", "Device",
]
