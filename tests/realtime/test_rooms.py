# tests/realtime/test_rooms.py
import pytest

from clinx_relay.core.errors import ValidationError
from clinx_relay.realtime.rooms import RoomKey, RoomKind


def test_room_keys_render_with_namespace() -> None:
    assert str(RoomKey.group(7)) == "group:7"
    assert str(RoomKey.chat(7)) == "chat:7"
    assert str(RoomKey.user(3)) == "user:3"


def test_same_id_in_different_namespaces_is_a_different_room() -> None:
    assert RoomKey.group(7) != RoomKey.chat(7)
    assert RoomKey.group(7) != RoomKey.channel(7)


def test_parse_round_trips_a_key() -> None:
    assert RoomKey.parse("channel:12") == RoomKey(RoomKind.CHANNEL, 12)


@pytest.mark.parametrize("raw", ["group", "team:1", "group:abc", ""])
def test_parse_rejects_malformed_keys(raw: str) -> None:
    with pytest.raises(ValidationError):
        RoomKey.parse(raw)
