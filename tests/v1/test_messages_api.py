# tests/v1/test_messages_api.py
"""HTTP message endpoints."""

from fastapi import status


def _send_direct(client, auth_headers, sender, recipient, content="hello"):
    return client.post(
        "/api/v1/messages/direct",
        json={"receiver_id": recipient.id, "content": content},
        headers=auth_headers(sender),
    )


def test_send_direct_message_creates_chat(client, auth_headers, alice, bob) -> None:
    """The first direct message opens the chat."""
    response = _send_direct(client, auth_headers, alice, bob)

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["created"] is True
    assert data["message"]["content"] == "hello"
    assert data["message"]["sender_id"] == alice.id

    again = _send_direct(client, auth_headers, alice, bob, "again")
    assert again.json()["created"] is False
    assert again.json()["chat_id"] == data["chat_id"]


def test_send_to_unknown_user_is_404(client, auth_headers, alice) -> None:
    response = client.post(
        "/api/v1/messages/direct",
        json={"receiver_id": 9999, "content": "hello"},
        headers=auth_headers(alice),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["code"] == "not_found"


def test_empty_message_is_400(client, auth_headers, alice, bob) -> None:
    response = _send_direct(client, auth_headers, alice, bob, "   ")
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "Message content or file is required"


def test_fetch_marks_seen_and_clears_unread(client, auth_headers, alice, bob) -> None:
    chat_id = _send_direct(client, auth_headers, alice, bob).json()["chat_id"]
    unread_url = f"/api/v1/conversations/direct/{chat_id}/unread"

    assert client.get(unread_url, headers=auth_headers(bob)).json() == {"unread_count": 1}

    page = client.get(f"/api/v1/conversations/direct/{chat_id}/messages", headers=auth_headers(bob))

    assert page.status_code == status.HTTP_200_OK
    assert [m["content"] for m in page.json()] == ["hello"]
    assert client.get(unread_url, headers=auth_headers(bob)).json() == {"unread_count": 0}


def test_outsider_gets_403(client, auth_headers, alice, bob, carol) -> None:
    chat_id = _send_direct(client, auth_headers, alice, bob).json()["chat_id"]

    response = client.get(
        f"/api/v1/conversations/direct/{chat_id}/messages", headers=auth_headers(carol)
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["code"] == "authorization"


def test_unknown_conversation_kind_is_rejected(client, auth_headers, alice) -> None:
    response = client.get("/api/v1/conversations/team/1/messages", headers=auth_headers(alice))
    assert response.status_code == 422


def test_seen_endpoint_reports_batch(client, auth_headers, alice, bob) -> None:
    chat_id = _send_direct(client, auth_headers, alice, bob).json()["chat_id"]
    _send_direct(client, auth_headers, alice, bob, "second")

    first = client.post(f"/api/v1/conversations/direct/{chat_id}/seen", headers=auth_headers(bob))
    second = client.post(f"/api/v1/conversations/direct/{chat_id}/seen", headers=auth_headers(bob))

    assert first.json()["updated"] == 2
    assert first.json()["seen_at"] is not None
    assert second.json() == {"updated": 0, "seen_at": None}


def test_conversation_list(client, auth_headers, alice, bob) -> None:
    _send_direct(client, auth_headers, alice, bob)

    response = client.get("/api/v1/conversations", headers=auth_headers(bob))

    assert response.status_code == status.HTTP_200_OK
    [summary] = response.json()
    assert summary["title"] == "Alice"
    assert summary["peer_id"] == alice.id
    assert summary["unread_count"] == 1
    assert summary["last_message"]["content"] == "hello"


def test_group_messages_round_trip(client, auth_headers, alice, bob) -> None:
    created = client.post(
        "/api/v1/groups/",
        json={"name": "Ops", "member_ids": [bob.id]},
        headers=auth_headers(alice),
    )
    assert created.status_code == status.HTTP_201_CREATED
    group_id = created.json()["id"]

    sent = client.post(
        f"/api/v1/conversations/group/{group_id}/messages",
        json={"content": "standup?"},
        headers=auth_headers(bob),
    )
    assert sent.status_code == status.HTTP_201_CREATED

    page = client.get(f"/api/v1/conversations/group/{group_id}/messages", headers=auth_headers(alice))
    assert [m["content"] for m in page.json()] == ["standup?"]


def test_ack_and_delete(client, auth_headers, alice, bob) -> None:
    message_id = _send_direct(client, auth_headers, alice, bob).json()["message"]["id"]

    ack = client.post(f"/api/v1/messages/{message_id}/ack", headers=auth_headers(bob))
    assert ack.json() == {"delivered": True}

    forbidden = client.delete(f"/api/v1/messages/{message_id}", headers=auth_headers(bob))
    assert forbidden.status_code == status.HTTP_403_FORBIDDEN
    deleted = client.delete(f"/api/v1/messages/{message_id}", headers=auth_headers(alice))
    assert deleted.status_code == status.HTTP_204_NO_CONTENT
