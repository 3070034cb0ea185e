"""Bearer token issuing and verification built on python-jose."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from clinx_relay.core.errors import AuthenticationError
from clinx_relay.core.settings import settings


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity extracted from a valid token."""

    user_id: int


def create_access_token(user_id: int, expires_delta: timedelta | None = None) -> str:
    """Return a signed JWT whose subject is the user id."""
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {"sub": str(user_id), "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> VerifiedIdentity:
    """Decode and validate a bearer token.

    Raises:
        AuthenticationError: If the token is missing, malformed, expired or
            carries no usable subject.
    """
    if not token:
        raise AuthenticationError("Authentication required")
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as err:
        raise AuthenticationError("Could not validate credentials") from err

    subject = payload.get("sub")
    try:
        return VerifiedIdentity(user_id=int(subject))
    except (TypeError, ValueError) as err:
        raise AuthenticationError("Could not validate credentials") from err


class TokenVerifier:
    """Token verification collaborator used by HTTP and socket handshakes.

    The coroutine signature lets deployments swap in a remote identity
    provider; the realtime gateway bounds every call with a timeout.
    """

    async def verify(self, token: str) -> VerifiedIdentity:
        return decode_access_token(token)
