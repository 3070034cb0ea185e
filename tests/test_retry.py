# tests/test_retry.py
"""Bounded retry around store operations."""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from clinx_relay.core.errors import TransientStoreError
from clinx_relay.db.retry import is_transient, with_store_retry, with_store_retry_async
from clinx_relay.repositories.conversation_store import ConversationStore


def _dropped_connection() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))


@pytest.fixture(autouse=True)
def no_sleep(mocker):
    return mocker.patch("clinx_relay.db.retry.time.sleep")


def test_dropped_connection_is_transient() -> None:
    assert is_transient(_dropped_connection())


def test_syntax_error_is_not_transient() -> None:
    assert not is_transient(OperationalError("SELEC 1", {}, Exception("syntax error")))


def test_transient_failure_is_retried_then_succeeds(mocker, no_sleep) -> None:
    func = mocker.Mock(side_effect=[_dropped_connection(), _dropped_connection(), "ok"])

    assert with_store_retry("load_page", func, max_attempts=3) == "ok"
    assert func.call_count == 3
    assert no_sleep.call_count == 2


def test_exhausted_retries_raise_transient_store_error(mocker) -> None:
    func = mocker.Mock(side_effect=_dropped_connection())

    with pytest.raises(TransientStoreError) as excinfo:
        with_store_retry("load_page", func, max_attempts=2)

    assert func.call_count == 2
    assert excinfo.value.data == {"operation": "load_page", "attempts": 2}


def test_non_transient_operational_error_is_reraised(mocker) -> None:
    func = mocker.Mock(side_effect=OperationalError("SELEC 1", {}, Exception("syntax error")))

    with pytest.raises(OperationalError):
        with_store_retry("load_page", func, max_attempts=3)
    assert func.call_count == 1


def test_other_errors_pass_through_untouched(mocker) -> None:
    func = mocker.Mock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate")))

    with pytest.raises(IntegrityError):
        with_store_retry("load_page", func)
    assert func.call_count == 1


def test_session_is_rolled_back_between_attempts(mocker) -> None:
    session = mocker.Mock()
    func = mocker.Mock(side_effect=[_dropped_connection(), "ok"])

    with_store_retry("load_page", func, session=session, max_attempts=2)

    session.rollback.assert_called_once_with()


@pytest.mark.asyncio
async def test_async_retry_backs_off_without_blocking_the_loop(mocker, no_sleep) -> None:
    async_sleep = mocker.patch("clinx_relay.db.retry.asyncio.sleep", new=mocker.AsyncMock())
    func = mocker.Mock(side_effect=[_dropped_connection(), "ok"])

    assert await with_store_retry_async("send_message", func, max_attempts=2) == "ok"
    assert async_sleep.await_count == 1
    no_sleep.assert_not_called()


@pytest.mark.asyncio
async def test_async_retry_exhaustion_raises_transient_store_error(mocker) -> None:
    mocker.patch("clinx_relay.db.retry.asyncio.sleep", new=mocker.AsyncMock())
    session = mocker.Mock()
    func = mocker.Mock(side_effect=_dropped_connection())

    with pytest.raises(TransientStoreError) as excinfo:
        await with_store_retry_async("send_message", func, session=session, max_attempts=3)

    assert excinfo.value.data == {"operation": "send_message", "attempts": 3}
    assert session.rollback.call_count == 3


@pytest.mark.asyncio
async def test_store_backoff_lets_other_tasks_run(db_session, mocker) -> None:
    mocker.patch("clinx_relay.db.retry._retry_delay", return_value=0.01)
    store = ConversationStore(db_session)
    ticks: list[str] = []
    work = mocker.Mock(side_effect=[_dropped_connection(), "done"])

    async def _ticker() -> None:
        ticks.append("tick")

    ticker = asyncio.create_task(_ticker())
    result = await store.atomic_async("send_message", work)

    assert result == "done"
    assert ticker.done()
    assert ticks == ["tick"]
