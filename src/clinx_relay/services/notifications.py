"""Per-user notifications: persisted, then pushed to the user's room.

``notify`` is a side effect of other operations. It never raises: a failure
to persist is logged and the triggering operation carries on.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinx_relay.core.errors import NotFoundError
from clinx_relay.db.retry import with_store_retry
from clinx_relay.db.time import as_utc
from clinx_relay.models import Notification
from clinx_relay.realtime import events
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.events import EventName

logger = logging.getLogger(__name__)


def serialize_notification(row: Notification) -> dict[str, Any]:
    created_at = as_utc(row.created_at)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "data": row.data or {},
        "is_read": row.is_read,
        "created_at": created_at.isoformat() if created_at else None,
    }


class NotificationService:
    def __init__(self, db: Session, dispatcher: Dispatcher | None = None) -> None:
        self.db = db
        self.dispatcher = dispatcher

    def _persist(
        self,
        user_id: int,
        type_: str,
        title: str | None,
        message: str | None,
        data: dict[str, Any] | None,
    ) -> dict[str, Any]:
        with self.db.begin_nested():
            row = Notification(
                user_id=user_id,
                type=type_,
                title=title,
                message=message,
                data=data or {},
            )
            self.db.add(row)
            self.db.flush()
            payload = serialize_notification(row)
        self.db.commit()
        return payload

    async def notify(
        self,
        user_id: int,
        type_: str,
        *,
        title: str | None = None,
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Persist and push a notification; returns None when persisting failed."""
        try:
            payload = self._persist(user_id, type_, title, message, data)
        except SQLAlchemyError:
            logger.error(
                "Failed to create %s notification for user %s", type_, user_id, exc_info=True
            )
            return None

        if self.dispatcher is not None:
            await self.dispatcher.dispatch(
                events.to_user(EventName.NOTIFICATION, user_id, payload)
            )
        return payload

    def list_for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        rows = with_store_retry(
            "list_notifications",
            lambda: list(
                self.db.scalars(
                    select(Notification)
                    .where(Notification.user_id == user_id)
                    .order_by(Notification.created_at.desc(), Notification.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ),
            session=self.db,
        )
        return [serialize_notification(row) for row in rows]

    def unread_count(self, user_id: int) -> int:
        return int(
            self.db.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            or 0
        )

    async def mark_read(self, user_id: int, notification_id: int) -> None:
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise NotFoundError("Notification not found", data={"notification_id": notification_id})
        self.db.commit()
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(
                events.to_user(
                    EventName.NOTIFICATION_READ,
                    user_id,
                    {"notification_id": notification_id, "unread_count": self.unread_count(user_id)},
                )
            )

    async def mark_all_read(self, user_id: int) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        self.db.commit()
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(
                events.to_user(EventName.NOTIFICATION_READ, user_id, {"all": True, "unread_count": 0})
            )
        return result.rowcount

    def delete(self, user_id: int, notification_id: int) -> None:
        row = self.db.get(Notification, notification_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("Notification not found", data={"notification_id": notification_id})
        self.db.delete(row)
        self.db.commit()
