"""Conversation and message endpoints shared by direct chats, groups and channels."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, status

from clinx_relay.repositories.records import ConversationKind
from clinx_relay.schemas.message import DirectMessageCreate, MessageCreate
from clinx_relay.services.membership import ConversationRef
from clinx_relay.services.messaging import MessageDraft

from ..dependencies import CurrentUserDep, MessagingServiceDep

router = APIRouter(tags=["messages"])


def _ref(kind: ConversationKind, ref_id: int) -> ConversationRef:
    return ConversationRef(kind, ref_id)


def _draft(body: MessageCreate) -> MessageDraft:
    return MessageDraft(
        message_type=body.message_type,
        content=body.content,
        file_path=body.file_path,
        duration=body.duration,
    )


@router.get("/conversations")
def list_conversations(
    current_user: CurrentUserDep, service: MessagingServiceDep
) -> list[dict[str, Any]]:
    """List the caller's conversations, most recent activity first."""
    return [summary.to_payload() for summary in service.list_conversations(current_user.id)]


@router.post("/conversations/direct/open/{user_id}")
def open_direct(
    user_id: int, current_user: CurrentUserDep, service: MessagingServiceDep
) -> dict[str, Any]:
    conversation, other = service.open_direct(current_user.id, user_id)
    payload = conversation.to_payload()
    payload["peer"] = {"id": other.id, "name": other.name, "profile_picture": other.profile_picture}
    return payload


@router.post("/messages/direct", status_code=status.HTTP_201_CREATED)
async def send_direct_message(
    body: DirectMessageCreate, current_user: CurrentUserDep, service: MessagingServiceDep
) -> dict[str, Any]:
    """Send a direct message, creating the chat on first contact."""
    result = await service.send_direct(current_user.id, body.receiver_id, _draft(body))
    return {
        "chat_id": result.conversation.id,
        "created": result.created_conversation,
        "message": result.message.to_payload(),
    }


@router.get("/conversations/{kind}/{ref_id}/messages")
async def list_messages(
    kind: ConversationKind,
    ref_id: int,
    current_user: CurrentUserDep,
    service: MessagingServiceDep,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    """Fetch a page of messages, oldest first, and mark them seen."""
    page = await service.fetch_messages(
        current_user.id, _ref(kind, ref_id), limit=limit, offset=offset
    )
    return [message.to_payload() for message in page]


@router.post("/conversations/{kind}/{ref_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    kind: ConversationKind,
    ref_id: int,
    body: MessageCreate,
    current_user: CurrentUserDep,
    service: MessagingServiceDep,
) -> dict[str, Any]:
    result = await service.send(current_user.id, _ref(kind, ref_id), _draft(body))
    return result.message.to_payload()


@router.post("/conversations/{kind}/{ref_id}/seen")
async def mark_seen(
    kind: ConversationKind,
    ref_id: int,
    current_user: CurrentUserDep,
    service: MessagingServiceDep,
) -> dict[str, Any]:
    batch = await service.mark_seen(current_user.id, _ref(kind, ref_id))
    return {
        "updated": batch.count,
        "seen_at": batch.seen_at.isoformat() if batch.seen_at else None,
    }


@router.get("/conversations/{kind}/{ref_id}/unread")
def unread_count(
    kind: ConversationKind,
    ref_id: int,
    current_user: CurrentUserDep,
    service: MessagingServiceDep,
) -> dict[str, int]:
    return {"unread_count": service.unread_count(current_user.id, _ref(kind, ref_id))}


@router.get("/conversations/{kind}/{ref_id}/media")
def list_media(
    kind: ConversationKind,
    ref_id: int,
    current_user: CurrentUserDep,
    service: MessagingServiceDep,
    message_type: str | None = Query(default=None, alias="type"),
) -> list[dict[str, Any]]:
    media = service.list_media(current_user.id, _ref(kind, ref_id), message_type)
    return [message.to_payload() for message in media]


@router.post("/messages/{message_id}/ack")
async def acknowledge_message(
    message_id: int, current_user: CurrentUserDep, service: MessagingServiceDep
) -> dict[str, bool]:
    """Delivery acknowledgement for clients without a live socket."""
    return {"delivered": await service.acknowledge(current_user.id, message_id)}


@router.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: int, current_user: CurrentUserDep, service: MessagingServiceDep
) -> None:
    await service.delete_message(current_user.id, message_id)
