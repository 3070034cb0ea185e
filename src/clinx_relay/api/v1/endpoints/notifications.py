"""Notification endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, status

from ..dependencies import CurrentUserDep, NotificationServiceDep

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/")
def list_notifications(
    current_user: CurrentUserDep,
    service: NotificationServiceDep,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    return {
        "notifications": service.list_for_user(current_user.id, limit=limit, offset=offset),
        "unread_count": service.unread_count(current_user.id),
    }


@router.get("/unread-count")
def unread_count(current_user: CurrentUserDep, service: NotificationServiceDep) -> dict[str, int]:
    return {"unread_count": service.unread_count(current_user.id)}


@router.put("/read-all")
async def mark_all_read(
    current_user: CurrentUserDep, service: NotificationServiceDep
) -> dict[str, int]:
    return {"updated": await service.mark_all_read(current_user.id)}


@router.put("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(
    notification_id: int, current_user: CurrentUserDep, service: NotificationServiceDep
) -> None:
    await service.mark_read(current_user.id, notification_id)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: int, current_user: CurrentUserDep, service: NotificationServiceDep
) -> None:
    service.delete(current_user.id, notification_id)
