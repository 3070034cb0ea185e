"""Business logic services for Clinx Relay."""

from .channels import ChannelService
from .delivery import DeliveryTracker
from .groups import GroupService
from .invite_sweeper import InviteSweeper
from .invites import InviteService
from .membership import ConversationRef, MembershipResolver
from .messaging import MessageDraft, MessagingService
from .notifications import NotificationService
from .teams import CapacityGate, TeamService

__all__ = [
    "CapacityGate",
    "ChannelService",
    "ConversationRef",
    "DeliveryTracker",
    "GroupService",
    "InviteService",
    "InviteSweeper",
    "MembershipResolver",
    "MessageDraft",
    "MessagingService",
    "NotificationService",
    "TeamService",
]
