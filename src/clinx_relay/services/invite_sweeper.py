"""Background removal of expired team invites.

Expired invites already stop counting toward a team's capacity; the sweeper
keeps the table from accumulating them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import TransientStoreError
from clinx_relay.core.settings import settings
from clinx_relay.db.session import SessionLocal
from clinx_relay.services.invites import sweep_expired

logger = logging.getLogger(__name__)


class InviteSweeper:
    """Periodically deletes expired, unaccepted team invites."""

    def __init__(self, interval_seconds: float | None = None, db_session: Session | None = None) -> None:
        """Initialize the sweeper.

        Args:
            interval_seconds: Seconds between sweeps. Defaults to the configured
                interval; zero or less disables the sweeper.
            db_session: Optional session to reuse. If None, each sweep opens
                its own session.
        """
        self.interval = (
            settings.invite_sweep_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._db_session = db_session

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    async def start(self) -> None:
        """Start the background sweep loop."""
        if not self.enabled:
            logger.info("Invite sweeper disabled")
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and wait for the current sweep to finish."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    def sweep_once(self) -> int:
        if self._db_session is not None:
            return sweep_expired(self._db_session)
        with SessionLocal() as db:
            return sweep_expired(db)

    async def _run(self) -> None:
        interval = max(0.1, float(self.interval))

        while not self._stopping.is_set():
            try:
                removed = await asyncio.to_thread(self.sweep_once)
            except (TransientStoreError, SQLAlchemyError) as e:
                logger.warning("InviteSweeper failed to sweep expired invites: %s", e)
            else:
                if removed:
                    logger.info("InviteSweeper removed %d expired team invites", removed)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
