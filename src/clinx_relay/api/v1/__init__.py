"""Version 1 API endpoints."""

from .endpoints import (
    channels_router,
    groups_router,
    invites_router,
    messages_router,
    notifications_router,
    realtime_router,
    teams_router,
    users_router,
)

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
