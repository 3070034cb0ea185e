"""Bounded retry for transient persistence failures."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import TransientStoreError
from clinx_relay.core.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Messages emitted by drivers when a pooled connection dies or the server is busy.
_RETRYABLE_ERROR_SNIPPETS = (
    "server closed the connection",
    "connection reset",
    "connection refused",
    "could not connect",
    "ssl connection has been closed unexpectedly",
    "terminating connection",
    "database is locked",
    "timeout",
)


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` signals a recoverable store outage."""
    if isinstance(exc, (DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(exc, OperationalError):
        if exc.connection_invalidated:
            return True
        message = str(exc).lower()
        return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)
    return False


def _retry_delay(attempt: int) -> float:
    base = settings.store_retry_base_delay_seconds * (2 ** (attempt - 1))
    return base + random.uniform(0, base / 2)


def _next_delay(
    op_name: str,
    exc: Exception,
    attempt: int,
    attempts: int,
    session: Session | None,
) -> float:
    """Roll back, then return the backoff before the next attempt or raise."""
    if session is not None:
        session.rollback()
    if not is_transient(exc):
        raise exc
    if attempt >= attempts:
        logger.error("Store operation %s failed after %d attempts: %s", op_name, attempt, exc)
        raise TransientStoreError(
            "Service temporarily unavailable, try again shortly",
            data={"operation": op_name, "attempts": attempt},
        ) from exc

    delay = _retry_delay(attempt)
    logger.warning(
        "Transient store failure in %s (attempt %d/%d), retrying in %.2fs: %s",
        op_name,
        attempt,
        attempts,
        delay,
        exc,
    )
    return delay


def with_store_retry(
    op_name: str,
    func: Callable[[], T],
    *,
    session: Session | None = None,
    max_attempts: int | None = None,
) -> T:
    """Run ``func`` and retry it on transient store failures.

    ``func`` must be a complete unit of work: when a session is given it is
    rolled back before every new attempt, so partial writes never leak.
    Blocks between attempts; use from worker threads and scripts.

    Raises:
        TransientStoreError: If the store stayed unreachable for every attempt.
    """
    attempts = max_attempts or settings.store_retry_attempts
    attempt = 1
    while True:
        try:
            return func()
        except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
            delay = _next_delay(op_name, exc, attempt, attempts, session)
        time.sleep(delay)
        attempt += 1


async def with_store_retry_async(
    op_name: str,
    func: Callable[[], T],
    *,
    session: Session | None = None,
    max_attempts: int | None = None,
) -> T:
    """Event-loop variant of :func:`with_store_retry`.

    Backoff suspends with ``asyncio.sleep`` so live sessions and fan-out keep
    running while the store recovers.
    """
    attempts = max_attempts or settings.store_retry_attempts
    attempt = 1
    while True:
        try:
            return func()
        except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
            delay = _next_delay(op_name, exc, attempt, attempts, session)
        await asyncio.sleep(delay)
        attempt += 1
