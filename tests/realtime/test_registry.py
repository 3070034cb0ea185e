# tests/realtime/test_registry.py
"""Presence registry bookkeeping."""

from clinx_relay.realtime.rooms import RoomKey


def test_first_and_last_session_flags(registry, connect, alice) -> None:
    first = connect(alice)
    assert registry.is_online(alice.id)

    second_is_first = registry.register(type(first)(user_id=alice.id, name=alice.name))
    assert second_is_first is False
    assert len(registry.sessions_for_user(alice.id)) == 2

    assert registry.unregister(first.session_id) is False
    assert registry.is_online(alice.id)


def test_last_disconnect_takes_user_offline(registry, connect, alice) -> None:
    session = connect(alice)
    assert registry.unregister(session.session_id) is True
    assert not registry.is_online(alice.id)
    assert registry.online_users() == set()


def test_unknown_session_unregister_is_a_noop(registry) -> None:
    assert registry.unregister("missing") is False


def test_register_joins_the_user_room(registry, connect, alice) -> None:
    session = connect(alice)
    assert registry.rooms_of(session.session_id) == frozenset({RoomKey.user(alice.id)})


def test_unregister_drops_room_entries(registry, connect, alice) -> None:
    session = connect(alice, RoomKey.group(1))
    registry.unregister(session.session_id)
    assert registry.sessions_in_rooms([RoomKey.group(1)]) == []


def test_join_user_covers_every_live_session(registry, connect, alice, bob) -> None:
    one = connect(alice)
    two = connect(alice)
    connect(bob)

    assert registry.join_user(alice.id, RoomKey.channel(5)) == 2
    members = registry.sessions_in_rooms([RoomKey.channel(5)])
    assert {s.session_id for s in members} == {one.session_id, two.session_id}

    assert registry.leave_user(alice.id, RoomKey.channel(5)) == 2
    assert registry.sessions_in_rooms([RoomKey.channel(5)]) == []


def test_join_user_without_sessions_joins_nothing(registry, alice) -> None:
    assert registry.join_user(alice.id, RoomKey.group(1)) == 0


def test_sessions_in_rooms_is_distinct(registry, connect, alice) -> None:
    session = connect(alice, RoomKey.group(1), RoomKey.group(2))
    found = registry.sessions_in_rooms([RoomKey.group(1), RoomKey.group(2)])
    assert [s.session_id for s in found] == [session.session_id]
