# tests/test_health.py
from fastapi import status


def test_health_check(client) -> None:
    """The health endpoint answers without authentication."""
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok"}


def test_root_describes_service(client) -> None:
    response = client.get("/")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["name"] == "Clinx Relay"
    assert body["docs"] == "/docs"
