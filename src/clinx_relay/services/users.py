"""CRUD-style helpers for users, their devices and presence status."""
from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import ConflictError, NotFoundError, ValidationError
from clinx_relay.models.user import ACTIVE_STATUSES, Device, User

__all__ = [
    "get_user",
    "require_user",
    "get_users",
    "create_user",
    "update_status",
    "register_device",
    "remove_device",
    "list_devices",
]


def get_user(db: Session, user_id: int) -> User | None:
    """Return a single user by primary key."""
    return db.get(User, user_id)


def require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError("User not found", data={"user_id": user_id})
    return user


def get_users(db: Session, skip: int = 0, limit: int = 100) -> Sequence[User]:
    """Return users with simple offset-based pagination."""
    return db.scalars(select(User).order_by(User.id).offset(skip).limit(limit)).all()


def create_user(db: Session, *, name: str, email: str, profile_picture: str | None = None) -> User:
    """Persist a new user identity; credentials live with the identity provider."""
    if db.scalar(select(User.id).where(func.lower(User.email) == email.lower())) is not None:
        raise ConflictError("Email already registered", data={"email": email})
    db_user = User(name=name, email=email, profile_picture=profile_picture)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def update_status(db: Session, user_id: int, status: str) -> User:
    """Set the user's self-declared presence status."""
    if status not in ACTIVE_STATUSES:
        raise ValidationError(f"Invalid status {status!r}", data={"allowed": list(ACTIVE_STATUSES)})
    db_user = require_user(db, user_id)
    db_user.active_status = status
    db.commit()
    db.refresh(db_user)
    return db_user


def register_device(db: Session, user_id: int, device_token: str, platform: str = "web") -> Device:
    """Register a push device, moving the token to this user if it was known."""
    require_user(db, user_id)
    device = db.scalar(select(Device).where(Device.device_token == device_token))
    if device is None:
        device = Device(user_id=user_id, device_token=device_token, platform=platform)
        db.add(device)
    else:
        device.user_id = user_id
        device.platform = platform
    try:
        db.commit()
    except IntegrityError as err:
        db.rollback()
        raise ConflictError("Device already registered", data={"device_token": device_token}) from err
    db.refresh(device)
    return device


def remove_device(db: Session, user_id: int, device_token: str) -> None:
    device = db.scalar(
        select(Device).where(Device.device_token == device_token, Device.user_id == user_id)
    )
    if device is None:
        raise NotFoundError("Device not found")
    db.delete(device)
    db.commit()


def list_devices(db: Session, user_id: int) -> Sequence[Device]:
    return db.scalars(select(Device).where(Device.user_id == user_id).order_by(Device.id)).all()
