# tests/v1/test_teams_api.py
"""Team, invite and capacity endpoints."""

from fastapi import status

from clinx_relay.models import Team


def _create_team(client, auth_headers, owner, name="Acme"):
    response = client.post("/api/v1/teams/", json={"name": name}, headers=auth_headers(owner))
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def test_create_and_list_teams(client, auth_headers, alice) -> None:
    team = _create_team(client, auth_headers, alice)

    assert team["slug"] == "acme"
    assert team["user_role"] == "owner"
    listed = client.get("/api/v1/teams/", headers=auth_headers(alice)).json()
    assert [(t["id"], t["member_count"]) for t in listed] == [(team["id"], 1)]

    channels = client.get("/api/v1/channels/", headers=auth_headers(alice)).json()
    assert {c["name"] for c in channels} == {"general", "announcements"}


def test_capacity_endpoint_counts_pending_invites(client, auth_headers, alice) -> None:
    team = _create_team(client, auth_headers, alice)
    client.post(
        f"/api/v1/teams/{team['id']}/invites",
        json={"email": "new@example.com"},
        headers=auth_headers(alice),
    )

    response = client.get(f"/api/v1/teams/{team['id']}/capacity", headers=auth_headers(alice))

    assert response.json() == {"current_members": 1, "pending_invites": 1, "total": 2, "limit": 5}


def test_capacity_error_is_403_with_counts(client, auth_headers, alice, db_session) -> None:
    team = _create_team(client, auth_headers, alice)
    row = db_session.get(Team, team["id"])
    row.member_limit = 1
    db_session.commit()

    response = client.post(
        f"/api/v1/teams/{team['id']}/invites",
        json={"email": "new@example.com"},
        headers=auth_headers(alice),
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN
    body = response.json()
    assert body["code"] == "capacity"
    assert body["data"] == {"current_members": 1, "limit": 1, "pending_invites": 0, "total": 1}


def test_invite_validate_and_accept(client, auth_headers, alice, bob) -> None:
    team = _create_team(client, auth_headers, alice)
    invite = client.post(
        f"/api/v1/teams/{team['id']}/invites",
        json={"email": "bob@example.com"},
        headers=auth_headers(alice),
    ).json()

    public = client.get(f"/api/v1/invites/validate/{invite['token']}")
    assert public.status_code == status.HTTP_200_OK
    assert public.json()["team_name"] == "Acme"
    assert "token" not in public.json()

    mine = client.get("/api/v1/invites/mine", headers=auth_headers(bob)).json()
    assert [i["id"] for i in mine] == [invite["id"]]

    accepted = client.post(
        "/api/v1/invites/accept", json={"token": invite["token"]}, headers=auth_headers(bob)
    )
    assert accepted.status_code == status.HTTP_200_OK
    assert accepted.json()["id"] == team["id"]

    reused = client.post(
        "/api/v1/invites/accept", json={"token": invite["token"]}, headers=auth_headers(bob)
    )
    assert reused.status_code == status.HTTP_409_CONFLICT


def test_wrong_user_cannot_accept(client, auth_headers, alice, carol) -> None:
    team = _create_team(client, auth_headers, alice)
    invite = client.post(
        f"/api/v1/teams/{team['id']}/invites",
        json={"email": "bob@example.com"},
        headers=auth_headers(alice),
    ).json()

    response = client.post(
        "/api/v1/invites/accept", json={"token": invite["token"]}, headers=auth_headers(carol)
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_member_management(client, auth_headers, alice, bob) -> None:
    team = _create_team(client, auth_headers, alice)
    url = f"/api/v1/teams/{team['id']}/members"

    added = client.post(url, json={"user_id": bob.id}, headers=auth_headers(alice))
    assert added.status_code == status.HTTP_204_NO_CONTENT

    members = client.get(url, headers=auth_headers(bob)).json()
    assert {m["id"]: m["role"] for m in members} == {alice.id: "owner", bob.id: "member"}

    promoted = client.put(f"{url}/{bob.id}/role", json={"role": "admin"}, headers=auth_headers(alice))
    assert promoted.status_code == status.HTTP_204_NO_CONTENT

    owner_removal = client.delete(f"{url}/{alice.id}", headers=auth_headers(bob))
    assert owner_removal.status_code == status.HTTP_403_FORBIDDEN

    removed = client.delete(f"{url}/{bob.id}", headers=auth_headers(alice))
    assert removed.status_code == status.HTTP_204_NO_CONTENT


def test_non_member_cannot_view_team(client, auth_headers, alice, bob) -> None:
    team = _create_team(client, auth_headers, alice)
    response = client.get(f"/api/v1/teams/{team['id']}", headers=auth_headers(bob))
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_missing_team_is_404(client, auth_headers, alice) -> None:
    response = client.get("/api/v1/teams/4242", headers=auth_headers(alice))
    assert response.status_code == status.HTTP_404_NOT_FOUND
