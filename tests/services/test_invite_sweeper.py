# tests/services/test_invite_sweeper.py
import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from clinx_relay.services.invite_sweeper import InviteSweeper


def test_zero_interval_disables_the_sweeper() -> None:
    assert InviteSweeper(interval_seconds=0).enabled is False
    assert InviteSweeper(interval_seconds=30).enabled is True


@pytest.mark.asyncio
async def test_disabled_sweeper_never_starts() -> None:
    sweeper = InviteSweeper(interval_seconds=0)
    await sweeper.start()
    assert sweeper._task is None
    await sweeper.stop()


@pytest.mark.asyncio
async def test_sweeper_runs_and_stops(mocker) -> None:
    sweep = mocker.patch("clinx_relay.services.invite_sweeper.sweep_expired", return_value=2)
    sweeper = InviteSweeper(interval_seconds=60, db_session=MagicMock())

    await sweeper.start()
    for _ in range(50):
        if sweep.called:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert sweep.called
    assert sweeper._task is None


@pytest.mark.asyncio
async def test_sweep_failure_keeps_the_loop_alive(mocker, caplog) -> None:
    sweep = mocker.patch(
        "clinx_relay.services.invite_sweeper.sweep_expired",
        side_effect=OperationalError("DELETE", {}, Exception("database is locked")),
    )
    sweeper = InviteSweeper(interval_seconds=60, db_session=MagicMock())

    await sweeper.start()
    for _ in range(50):
        if sweep.called:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert "failed to sweep expired invites" in caplog.text


def test_sweep_once_uses_the_given_session(mocker) -> None:
    session = MagicMock()
    sweep = mocker.patch("clinx_relay.services.invite_sweeper.sweep_expired", return_value=0)

    assert InviteSweeper(interval_seconds=1, db_session=session).sweep_once() == 0
    sweep.assert_called_once_with(session)
