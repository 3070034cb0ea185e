# tests/services/test_invites.py
"""Team invitations and how they interact with team capacity."""

from datetime import timedelta

import pytest
import pytest_asyncio

from clinx_relay.core.errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clinx_relay.db.time import utcnow
from clinx_relay.models import TeamInvite
from clinx_relay.services.invites import sweep_expired


@pytest_asyncio.fixture
async def team(teams, alice):
    return await teams.create_team(alice.id, name="Acme")


def _expire(db_session, invite_id: int) -> None:
    invite = db_session.get(TeamInvite, invite_id)
    invite.expires_at = utcnow() - timedelta(hours=1)
    db_session.commit()


@pytest.mark.asyncio
async def test_invite_issues_a_token_and_notifies_existing_user(
    invites, connect, team, alice, bob
) -> None:
    session = connect(bob)

    invite = await invites.create_invite(alice.id, team.id, email="bob@example.com")

    assert invite["updated"] is False
    assert len(invite["token"]) == 64
    assert invite["team_name"] == "Acme"
    notification = session.payloads("notification")[0]
    assert notification["type"] == "team_invite"
    assert notification["data"]["token"] == invite["token"]


@pytest.mark.asyncio
async def test_invite_for_unknown_address_needs_no_user(invites, team, alice) -> None:
    invite = await invites.create_invite(alice.id, team.id, email="new@example.com")
    assert invite["email"] == "new@example.com"
    assert [i["id"] for i in invites.list_pending(alice.id, team.id)] == [invite["id"]]


@pytest.mark.asyncio
async def test_pending_invites_count_toward_capacity(invites, teams, team, alice, db_session) -> None:
    team.member_limit = 2
    db_session.commit()
    await invites.create_invite(alice.id, team.id, email="one@example.com")

    with pytest.raises(CapacityError) as excinfo:
        await invites.create_invite(alice.id, team.id, email="two@example.com")

    assert excinfo.value.data == {
        "current_members": 1,
        "limit": 2,
        "pending_invites": 1,
        "total": 2,
    }
    assert teams.capacity(alice.id, team.id).total == 2


@pytest.mark.asyncio
async def test_refreshing_a_pending_invite_reuses_its_seat(invites, team, alice, db_session) -> None:
    team.member_limit = 2
    db_session.commit()
    first = await invites.create_invite(alice.id, team.id, email="one@example.com")

    again = await invites.create_invite(alice.id, team.id, email="ONE@example.com", role="admin")

    assert again["updated"] is True
    assert again["id"] == first["id"]
    assert again["token"] != first["token"]
    assert again["role"] == "admin"


@pytest.mark.asyncio
async def test_expired_invites_free_their_seat(invites, team, alice, db_session) -> None:
    team.member_limit = 2
    db_session.commit()
    stale = await invites.create_invite(alice.id, team.id, email="one@example.com")
    _expire(db_session, stale["id"])

    fresh = await invites.create_invite(alice.id, team.id, email="two@example.com")

    assert fresh["updated"] is False


@pytest.mark.asyncio
async def test_inviting_a_member_conflicts(invites, teams, team, alice, bob) -> None:
    await teams.add_member(alice.id, team.id, bob.id)
    with pytest.raises(ConflictError):
        await invites.create_invite(alice.id, team.id, email="bob@example.com")


@pytest.mark.asyncio
async def test_only_managers_invite(invites, teams, team, alice, bob) -> None:
    await teams.add_member(alice.id, team.id, bob.id)
    with pytest.raises(AuthorizationError):
        await invites.create_invite(bob.id, team.id, email="x@example.com")


@pytest.mark.asyncio
async def test_invalid_email_is_rejected(invites, team, alice) -> None:
    with pytest.raises(ValidationError):
        await invites.create_invite(alice.id, team.id, email="not-an-email")


@pytest.mark.asyncio
async def test_accept_enrolls_and_consumes(invites, teams, connect, team, alice, bob) -> None:
    owner = connect(alice)
    invite = await invites.create_invite(alice.id, team.id, email="bob@example.com")

    joined = await invites.accept(bob.id, invite["token"])

    assert joined.id == team.id
    assert teams.role_of(bob.id, team.id) == "member"
    assert len(teams.channels.list_channels(bob.id)) == 2
    assert owner.payloads("notification")[-1]["type"] == "team_join"
    with pytest.raises(ConflictError):
        await invites.accept(bob.id, invite["token"])


@pytest.mark.asyncio
async def test_accept_requires_matching_email(invites, team, alice, carol) -> None:
    invite = await invites.create_invite(alice.id, team.id, email="bob@example.com")
    with pytest.raises(AuthorizationError):
        await invites.accept(carol.id, invite["token"])


@pytest.mark.asyncio
async def test_accept_at_capacity_leaves_invite_pending(
    invites, teams, team, alice, bob, carol, db_session
) -> None:
    team.member_limit = 2
    db_session.commit()
    invite = await invites.create_invite(alice.id, team.id, email="bob@example.com")
    team.member_limit = 3
    db_session.commit()
    await teams.add_member(alice.id, team.id, carol.id)
    team.member_limit = 2
    db_session.commit()

    with pytest.raises(CapacityError) as excinfo:
        await invites.accept(bob.id, invite["token"])

    assert excinfo.value.data == {"current_members": 2, "limit": 2}
    pending, _ = invites.validate_token(invite["token"])
    assert pending.accepted_at is None
    assert teams.role_of(bob.id, team.id) is None


@pytest.mark.asyncio
async def test_expired_invite_cannot_be_accepted(invites, team, alice, bob, db_session) -> None:
    invite = await invites.create_invite(alice.id, team.id, email="bob@example.com")
    _expire(db_session, invite["id"])

    with pytest.raises(ConflictError) as excinfo:
        await invites.accept(bob.id, invite["token"])
    assert excinfo.value.message == "Invite has expired"


@pytest.mark.asyncio
async def test_unknown_token(invites) -> None:
    with pytest.raises(NotFoundError):
        invites.describe("missing")


@pytest.mark.asyncio
async def test_resend_rotates_the_token(invites, team, alice) -> None:
    invite = await invites.create_invite(alice.id, team.id, email="new@example.com")

    resent = invites.resend(alice.id, invite["id"])

    assert resent["token"] != invite["token"]
    with pytest.raises(NotFoundError):
        invites.validate_token(invite["token"])


@pytest.mark.asyncio
async def test_cancel_frees_the_seat(invites, team, alice, db_session) -> None:
    team.member_limit = 2
    db_session.commit()
    invite = await invites.create_invite(alice.id, team.id, email="one@example.com")

    invites.cancel(alice.id, invite["id"])

    assert invites.list_pending(alice.id, team.id) == []
    await invites.create_invite(alice.id, team.id, email="two@example.com")


@pytest.mark.asyncio
async def test_my_pending_lists_invites_by_email(invites, team, alice, bob) -> None:
    invite = await invites.create_invite(alice.id, team.id, email="Bob@Example.com")
    mine = invites.my_pending(bob.id)
    assert [i["id"] for i in mine] == [invite["id"]]
    assert mine[0]["invited_by_name"] == "Alice"


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_unaccepted(invites, team, alice, db_session) -> None:
    live = await invites.create_invite(alice.id, team.id, email="live@example.com")
    stale = await invites.create_invite(alice.id, team.id, email="stale@example.com")
    _expire(db_session, stale["id"])

    assert sweep_expired(db_session) == 1

    assert db_session.get(TeamInvite, live["id"]) is not None
    assert sweep_expired(db_session) == 0


@pytest.mark.asyncio
async def test_team_admins_may_invite_admins_and_members_may_not_invite(
    invites, teams, team, alice, bob, carol
) -> None:
    await teams.add_member(alice.id, team.id, bob.id, "admin")
    await teams.add_member(alice.id, team.id, carol.id)

    invite = await invites.create_invite(bob.id, team.id, email="lead@example.com", role="admin")
    assert invite["role"] == "admin"

    with pytest.raises(AuthorizationError):
        await invites.create_invite(carol.id, team.id, email="someone@example.com")
