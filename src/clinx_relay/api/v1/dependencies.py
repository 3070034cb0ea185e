"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from clinx_relay.core.errors import AuthenticationError
from clinx_relay.core.security import TokenVerifier, decode_access_token
from clinx_relay.db.session import get_db
from clinx_relay.models import User
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.services.channels import ChannelService
from clinx_relay.services.groups import GroupService
from clinx_relay.services.invites import InviteService
from clinx_relay.services.messaging import MessagingService
from clinx_relay.services.notifications import NotificationService
from clinx_relay.services.teams import TeamService

# HTTP Bearer scheme; missing credentials surface as AuthenticationError
bearer_scheme = HTTPBearer(auto_error=False)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_registry(request: Request) -> PresenceRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


RegistryDep = Annotated[PresenceRegistry, Depends(get_registry)]
DispatcherDep = Annotated[Dispatcher, Depends(get_dispatcher)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from the bearer token.

    Raises:
        AuthenticationError: If the token is missing or invalid, or the
            user no longer exists.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")
    identity = decode_access_token(credentials.credentials)
    user = db.get(User, identity.user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("User not found")
    return user


# Type alias for current user dependency
CurrentUserDep = Annotated[User, Depends(get_current_user)]


def get_notification_service(db: SessionDep, dispatcher: DispatcherDep) -> NotificationService:
    return NotificationService(db, dispatcher)


def get_messaging_service(db: SessionDep, dispatcher: DispatcherDep) -> MessagingService:
    return MessagingService(db, dispatcher)


def get_group_service(
    db: SessionDep, registry: RegistryDep, dispatcher: DispatcherDep
) -> GroupService:
    return GroupService(db, registry, dispatcher)


def get_channel_service(
    db: SessionDep, registry: RegistryDep, dispatcher: DispatcherDep
) -> ChannelService:
    return ChannelService(db, registry, dispatcher)


def get_team_service(
    db: SessionDep, registry: RegistryDep, dispatcher: DispatcherDep
) -> TeamService:
    return TeamService(db, registry, dispatcher)


def get_invite_service(
    db: SessionDep, registry: RegistryDep, dispatcher: DispatcherDep
) -> InviteService:
    return InviteService(db, registry, dispatcher)


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]
MessagingServiceDep = Annotated[MessagingService, Depends(get_messaging_service)]
GroupServiceDep = Annotated[GroupService, Depends(get_group_service)]
ChannelServiceDep = Annotated[ChannelService, Depends(get_channel_service)]
TeamServiceDep = Annotated[TeamService, Depends(get_team_service)]
InviteServiceDep = Annotated[InviteService, Depends(get_invite_service)]
