# tests/services/test_users.py
import pytest

from clinx_relay.core.errors import ConflictError, NotFoundError, ValidationError
from clinx_relay.services import users as user_service


def test_create_user_rejects_duplicate_email(db_session, alice) -> None:
    with pytest.raises(ConflictError):
        user_service.create_user(db_session, name="Other", email="ALICE@example.com")


def test_update_status(db_session, alice) -> None:
    assert user_service.update_status(db_session, alice.id, "dnd").active_status == "dnd"
    with pytest.raises(ValidationError):
        user_service.update_status(db_session, alice.id, "sleeping")


def test_device_token_moves_between_users(db_session, alice, bob) -> None:
    user_service.register_device(db_session, alice.id, "tok-1", "ios")
    moved = user_service.register_device(db_session, bob.id, "tok-1", "android")

    assert moved.user_id == bob.id
    assert list(user_service.list_devices(db_session, alice.id)) == []
    with pytest.raises(NotFoundError):
        user_service.remove_device(db_session, alice.id, "tok-1")
    user_service.remove_device(db_session, bob.id, "tok-1")
    assert list(user_service.list_devices(db_session, bob.id)) == []


def test_inactive_users_are_not_found(db_session, alice) -> None:
    alice.is_active = False
    db_session.commit()
    with pytest.raises(NotFoundError):
        user_service.require_user(db_session, alice.id)
