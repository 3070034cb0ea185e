# tests/services/test_groups.py
"""Group membership, permissions, join requests and invite links."""

from datetime import timedelta

import pytest
import pytest_asyncio

from clinx_relay.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.db.time import utcnow
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.services.membership import ConversationRef
from clinx_relay.services.messaging import MessageDraft


@pytest_asyncio.fixture
async def group(groups, alice):
    created, _ = await groups.create_group(alice.id, name="Design")
    return created


@pytest_asyncio.fixture
async def approval_group(groups, alice):
    created, _ = await groups.create_group(
        alice.id, name="Board", permissions={"admin_approval": True, "add_members": True}
    )
    return created


@pytest.mark.asyncio
async def test_creator_is_admin(groups, group, alice) -> None:
    details = groups.get_group(alice.id, group.id)
    assert details["user_role"] == "admin"
    assert [m["user_id"] for m in details["members"]] == [alice.id]


@pytest.mark.asyncio
async def test_blank_name_is_rejected(groups, alice) -> None:
    with pytest.raises(ValidationError):
        await groups.create_group(alice.id, name="   ")


@pytest.mark.asyncio
async def test_added_member_joins_the_live_room(groups, connect, group, alice, bob, registry) -> None:
    session = connect(bob)

    result = await groups.add_member(alice.id, group.id, bob.id)

    assert result == {"status": "added"}
    assert RoomKey.group(group.id) in registry.rooms_of(session.session_id)
    assert session.names() == ["group_added", "notification"]


@pytest.mark.asyncio
async def test_adding_an_existing_member_conflicts(groups, group, alice, bob) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    with pytest.raises(ConflictError):
        await groups.add_member(alice.id, group.id, bob.id)


@pytest.mark.asyncio
async def test_plain_member_cannot_add(groups, group, alice, bob, carol) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    with pytest.raises(AuthorizationError):
        await groups.add_member(bob.id, group.id, carol.id)


@pytest.mark.asyncio
async def test_admin_approval_turns_member_add_into_request(
    groups, approval_group, alice, bob, carol
) -> None:
    await groups.add_member(alice.id, approval_group.id, bob.id)

    result = await groups.add_member(bob.id, approval_group.id, carol.id)

    assert result["status"] == "pending"
    assert result["request"]["user_id"] == carol.id
    membership = groups.resolver.resolve(carol.id, ConversationRef.group(approval_group.id))
    assert not membership.is_member


@pytest.mark.asyncio
async def test_duplicate_request_returns_the_pending_one(groups, approval_group, bob) -> None:
    first = await groups.request_join(bob.id, approval_group.id)
    second = await groups.request_join(bob.id, approval_group.id)
    assert first["request"]["id"] == second["request"]["id"]


@pytest.mark.asyncio
async def test_approved_request_is_terminal(groups, approval_group, alice, bob) -> None:
    pending = await groups.request_join(bob.id, approval_group.id)
    request_id = pending["request"]["id"]

    await groups.approve_request(alice.id, approval_group.id, request_id)

    membership = groups.resolver.resolve(bob.id, ConversationRef.group(approval_group.id))
    assert membership.is_member and membership.role == "member"
    with pytest.raises(ConflictError):
        groups.reject_request(alice.id, approval_group.id, request_id)
    assert groups.list_join_requests(alice.id, approval_group.id) == []


@pytest.mark.asyncio
async def test_rejected_request_cannot_be_approved(groups, approval_group, alice, bob) -> None:
    pending = await groups.request_join(bob.id, approval_group.id)
    request_id = pending["request"]["id"]

    groups.reject_request(alice.id, approval_group.id, request_id)

    with pytest.raises(ConflictError):
        await groups.approve_request(alice.id, approval_group.id, request_id)
    assert not groups.resolver.resolve(bob.id, ConversationRef.group(approval_group.id)).is_member


@pytest.mark.asyncio
async def test_open_group_join_is_immediate(groups, group, bob) -> None:
    assert await groups.request_join(bob.id, group.id) == {"status": "joined"}
    with pytest.raises(ConflictError):
        await groups.request_join(bob.id, group.id)


@pytest.mark.asyncio
async def test_invite_link_joins_and_rejects_when_expired(
    groups, group, alice, bob, carol, db_session
) -> None:
    link = groups.create_invite_link(alice.id, group.id)

    joined = await groups.join_by_token(bob.id, link.token)
    assert joined == {"status": "joined", "group_id": group.id}

    link.expires_at = utcnow() - timedelta(hours=1)
    db_session.commit()
    with pytest.raises(ConflictError):
        await groups.join_by_token(carol.id, link.token)


@pytest.mark.asyncio
async def test_unknown_invite_token(groups, bob) -> None:
    with pytest.raises(NotFoundError):
        await groups.join_by_token(bob.id, "nope")


@pytest.mark.asyncio
async def test_invite_link_must_expire_in_the_future(groups, group, alice) -> None:
    with pytest.raises(ValidationError):
        groups.create_invite_link(alice.id, group.id, expires_at=utcnow() - timedelta(minutes=1))


@pytest.mark.asyncio
async def test_permission_update_is_pushed_to_the_room(groups, connect, group, alice, bob) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    watcher = connect(bob, RoomKey.group(group.id))

    flags = await groups.update_permissions(alice.id, group.id, {"send_message": False})

    assert flags.send_message is False
    payload = watcher.payloads("group_permissions_updated")[0]
    assert payload["permissions"]["send_message"] is False


@pytest.mark.asyncio
async def test_unknown_permission_flag_is_rejected(groups, group, alice) -> None:
    with pytest.raises(ValidationError):
        await groups.update_permissions(alice.id, group.id, {"fly": True})


@pytest.mark.asyncio
async def test_send_permission_is_enforced_for_members_only(
    groups, messaging, group, alice, bob
) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    await groups.update_permissions(alice.id, group.id, {"send_message": False})
    ref = ConversationRef.group(group.id)

    with pytest.raises(AuthorizationError):
        await messaging.send(bob.id, ref, MessageDraft(content="hi"))
    sent = await messaging.send(alice.id, ref, MessageDraft(content="admins still can"))
    assert sent.message.sender_id == alice.id


@pytest.mark.asyncio
async def test_leaving_drops_the_live_room(groups, connect, group, alice, bob, registry) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    session = connect(bob, RoomKey.group(group.id))

    await groups.remove_member(bob.id, group.id, bob.id)

    assert RoomKey.group(group.id) not in registry.rooms_of(session.session_id)
    assert session.payloads("group_removed") == [{"group_id": group.id}]


@pytest.mark.asyncio
async def test_creator_cannot_be_removed_by_others(groups, group, alice, bob) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    groups.change_role(alice.id, group.id, bob.id, "admin")
    with pytest.raises(AuthorizationError):
        await groups.remove_member(bob.id, group.id, alice.id)


@pytest.mark.asyncio
async def test_delete_group_removes_everything(groups, group, alice, bob) -> None:
    await groups.add_member(alice.id, group.id, bob.id)
    with pytest.raises(AuthorizationError):
        await groups.delete_group(bob.id, group.id)

    await groups.delete_group(alice.id, group.id)

    with pytest.raises(NotFoundError):
        groups.get_group(alice.id, group.id)
