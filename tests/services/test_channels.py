# tests/services/test_channels.py
"""Team-scoped channels."""

import pytest
import pytest_asyncio

from clinx_relay.core.errors import (
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.services.channels import normalize_channel_name
from clinx_relay.services.membership import ConversationRef
from clinx_relay.services.messaging import MessageDraft


@pytest_asyncio.fixture
async def team(teams, alice, bob):
    created = await teams.create_team(alice.id, name="Acme")
    await teams.add_member(alice.id, created.id, bob.id)
    return created


def test_channel_names_are_normalized() -> None:
    assert normalize_channel_name("  Release Notes ") == "release-notes"
    with pytest.raises(ValidationError):
        normalize_channel_name("a")
    with pytest.raises(ValidationError):
        normalize_channel_name("no/slashes")


@pytest.mark.asyncio
async def test_public_channel_enrolls_the_team(channels, connect, team, alice, bob, registry) -> None:
    session = connect(bob)

    channel = await channels.create_channel(alice.id, name="Release Notes")

    assert channel.name == "release-notes"
    assert {m["user_id"] for m in channels.list_members(bob.id, channel.id)} == {alice.id, bob.id}
    assert RoomKey.channel(channel.id) in registry.rooms_of(session.session_id)
    assert session.payloads("channel_added")[0]["channel"]["id"] == channel.id


@pytest.mark.asyncio
async def test_private_channel_only_has_its_creator(channels, team, alice, bob) -> None:
    channel = await channels.create_channel(alice.id, name="secret", type_="private")

    assert [m["user_id"] for m in channels.list_members(alice.id, channel.id)] == [alice.id]
    with pytest.raises(AuthorizationError):
        await channels.join_channel(bob.id, channel.id)


@pytest.mark.asyncio
async def test_duplicate_channel_name_conflicts(channels, team, alice) -> None:
    with pytest.raises(ConflictError):
        await channels.create_channel(alice.id, name="General")


@pytest.mark.asyncio
async def test_default_channels_are_fixed(channels, team, alice, bob) -> None:
    general = channels.list_channels(alice.id)[-1]
    assert general["name"] == "general"

    with pytest.raises(ValidationError):
        channels.leave_channel(bob.id, general["id"])
    with pytest.raises(ValidationError):
        channels.delete_channel(alice.id, general["id"])
    with pytest.raises(ValidationError):
        channels.update_channel(alice.id, general["id"], name="renamed")

    updated = channels.update_channel(alice.id, general["id"], description="Chit chat")
    assert updated.description == "Chit chat"


@pytest.mark.asyncio
async def test_archived_channel_is_read_only(channels, messaging, team, alice, bob) -> None:
    channel = await channels.create_channel(alice.id, name="old-project")
    ref = ConversationRef.channel(channel.id)
    await messaging.send(bob.id, ref, MessageDraft(content="last words"))

    channels.update_channel(alice.id, channel.id, is_archived=True)

    with pytest.raises(AuthorizationError):
        await messaging.send(bob.id, ref, MessageDraft(content="too late"))
    assert len(await messaging.fetch_messages(bob.id, ref)) == 1
    assert channel.id not in {c["id"] for c in channels.list_channels(bob.id)}


@pytest.mark.asyncio
async def test_leave_and_rejoin(channels, messaging, connect, team, alice, bob, registry) -> None:
    channel = await channels.create_channel(alice.id, name="random")
    session = connect(bob, RoomKey.channel(channel.id))
    ref = ConversationRef.channel(channel.id)

    channels.leave_channel(bob.id, channel.id)

    assert RoomKey.channel(channel.id) not in registry.rooms_of(session.session_id)
    with pytest.raises(AuthorizationError):
        await messaging.send(bob.id, ref, MessageDraft(content="hi"))

    await channels.join_channel(bob.id, channel.id)
    sent = await messaging.send(bob.id, ref, MessageDraft(content="back"))
    assert sent.message.content == "back"


@pytest.mark.asyncio
async def test_only_managers_or_creator_delete(channels, team, alice, bob) -> None:
    channel = await channels.create_channel(alice.id, name="planning")
    with pytest.raises(AuthorizationError):
        channels.delete_channel(bob.id, channel.id)

    mine = await channels.create_channel(bob.id, name="bobs-corner")
    channels.delete_channel(bob.id, mine.id)
    assert mine.id not in {c["id"] for c in channels.list_channels(bob.id)}


@pytest.mark.asyncio
async def test_outsider_cannot_see_team_channels(channels, messaging, team, alice, carol) -> None:
    general = channels.list_channels(alice.id)[-1]
    with pytest.raises(ValidationError):
        channels.list_channels(carol.id)
    with pytest.raises(AuthorizationError):
        await messaging.fetch_messages(carol.id, ConversationRef.channel(general["id"]))


@pytest.mark.asyncio
async def test_channel_unread_counts_follow_last_read(channels, messaging, team, alice, bob) -> None:
    general = channels.list_channels(alice.id)[-1]
    ref = ConversationRef.channel(general["id"])
    await messaging.send(alice.id, ref, MessageDraft(content="one"))
    await messaging.send(alice.id, ref, MessageDraft(content="two"))

    assert channels.list_channels(bob.id)[-1]["unread_count"] == 2
    await messaging.fetch_messages(bob.id, ref)
    assert channels.list_channels(bob.id)[-1]["unread_count"] == 0


@pytest.mark.asyncio
async def test_mute_requires_membership(channels, team, alice, bob) -> None:
    channel = await channels.create_channel(alice.id, name="noisy")
    channels.set_muted(bob.id, channel.id, True)
    listed = {c["id"]: c for c in channels.list_channels(bob.id)}
    assert listed[channel.id]["is_muted"] is True
