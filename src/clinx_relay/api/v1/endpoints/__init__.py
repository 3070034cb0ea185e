"""API endpoint modules for version 1."""

from .channels import router as channels_router
from .groups import router as groups_router
from .invites import router as invites_router
from .messages import router as messages_router
from .notifications import router as notifications_router
from .realtime import router as realtime_router
from .teams import router as teams_router
from .users import router as users_router

__all__ = [
    "channels_router",
    "groups_router",
    "invites_router",
    "messages_router",
    "notifications_router",
    "realtime_router",
    "teams_router",
    "users_router",
]
