"""WebSocket envelope models."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ClientEvent(BaseModel):
    """Client -> server frame."""

    event: str
    data: Any = None


class ServerEvent(BaseModel):
    """Server -> client frame."""

    event: str
    data: dict[str, Any] | list[Any] = {}
