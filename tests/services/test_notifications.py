# tests/services/test_notifications.py
import pytest
from sqlalchemy.exc import OperationalError

from clinx_relay.core.errors import NotFoundError


@pytest.mark.asyncio
async def test_notify_persists_and_pushes(notifier, connect, alice) -> None:
    session = connect(alice)

    payload = await notifier.notify(alice.id, "message", title="Hi", message="there", data={"chat_id": 1})

    assert payload["is_read"] is False
    assert session.payloads("notification") == [payload]
    assert notifier.unread_count(alice.id) == 1


@pytest.mark.asyncio
async def test_notify_failure_is_logged_not_raised(notifier, mocker, alice, caplog) -> None:
    mocker.patch.object(
        notifier, "_persist", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))
    )

    assert await notifier.notify(alice.id, "message") is None
    assert "Failed to create message notification" in caplog.text


@pytest.mark.asyncio
async def test_mark_read_and_read_all(notifier, connect, alice) -> None:
    first = await notifier.notify(alice.id, "message")
    await notifier.notify(alice.id, "message")
    session = connect(alice)

    await notifier.mark_read(alice.id, first["id"])

    assert notifier.unread_count(alice.id) == 1
    assert session.payloads("notification_read")[0] == {"notification_id": first["id"], "unread_count": 1}
    assert await notifier.mark_all_read(alice.id) == 1
    assert notifier.unread_count(alice.id) == 0


@pytest.mark.asyncio
async def test_cannot_touch_someone_elses_notification(notifier, alice, bob) -> None:
    note = await notifier.notify(alice.id, "message")
    with pytest.raises(NotFoundError):
        await notifier.mark_read(bob.id, note["id"])
    with pytest.raises(NotFoundError):
        notifier.delete(bob.id, note["id"])


@pytest.mark.asyncio
async def test_list_is_newest_first(notifier, alice) -> None:
    older = await notifier.notify(alice.id, "message", title="older")
    newer = await notifier.notify(alice.id, "message", title="newer")

    listed = notifier.list_for_user(alice.id)

    assert [n["id"] for n in listed] == [newer["id"], older["id"]]
    notifier.delete(alice.id, older["id"])
    assert [n["id"] for n in notifier.list_for_user(alice.id)] == [newer["id"]]
