"""Message send, fetch and seen flows across direct chats, groups and channels.

Every write follows the same path: resolve membership, persist in one
transaction, then dispatch immediately so fan-out keeps commit order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinx_relay.core.errors import AuthorizationError, NotFoundError, ValidationError
from clinx_relay.core.settings import settings
from clinx_relay.db.time import as_utc
from clinx_relay.models import Channel, Group, User
from clinx_relay.models.message import MESSAGE_TYPES
from clinx_relay.realtime import events
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.events import EventName
from clinx_relay.repositories.conversation_store import ConversationStore
from clinx_relay.repositories.records import (
    ConversationKind,
    ConversationRecord,
    ConversationSummary,
    MessageRecord,
)
from clinx_relay.services.delivery import DeliveryTracker, SeenBatch
from clinx_relay.services.membership import ConversationRef, Membership, MembershipResolver
from clinx_relay.services.notifications import NotificationService

logger = logging.getLogger(__name__)

INDICATOR_EVENTS = frozenset({EventName.TYPING, EventName.STOP_TYPING, EventName.MESSAGE_SEEN})


@dataclass(frozen=True)
class MessageDraft:
    """Validated body of a message about to be sent."""

    message_type: str = "text"
    content: str | None = None
    file_path: str | None = None
    duration: int | None = None

    def __post_init__(self) -> None:
        if self.message_type not in MESSAGE_TYPES:
            raise ValidationError(
                f"Unsupported message type {self.message_type!r}",
                data={"allowed": list(MESSAGE_TYPES)},
            )
        if self.content is not None and not isinstance(self.content, str):
            raise ValidationError("Message content must be text")
        if self.duration is not None and (
            isinstance(self.duration, bool) or not isinstance(self.duration, int)
        ):
            raise ValidationError("Duration must be a whole number of seconds")
        has_content = bool(self.content and self.content.strip())
        if not has_content and not self.file_path:
            raise ValidationError("Message content or file is required")
        if self.message_type == "text" and not has_content:
            raise ValidationError("Text messages need content")
        if self.duration is not None and self.duration < 0:
            raise ValidationError("Duration must not be negative")


@dataclass(frozen=True)
class SendResult:
    conversation: ConversationRecord
    message: MessageRecord
    created_conversation: bool = False


class MessagingService:
    def __init__(
        self,
        db: Session,
        dispatcher: Dispatcher,
        notifier: NotificationService | None = None,
    ) -> None:
        self.db = db
        self.store = ConversationStore(db)
        self.resolver = MembershipResolver(db, self.store)
        self.delivery = DeliveryTracker(self.store)
        self.dispatcher = dispatcher
        self.notifier = notifier or NotificationService(db, dispatcher)

    # -- helpers -------------------------------------------------------

    def _user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found", data={"user_id": user_id})
        return user

    def _require_member(self, actor_id: int, ref: ConversationRef) -> Membership:
        return self.resolver.require_member(actor_id, ref)

    def _conversation_membership(self, actor_id: int, conversation_id: int) -> Membership:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", data={"conversation_id": conversation_id})
        membership = self.resolver.resolve_conversation(actor_id, conversation)
        if not membership.is_member:
            raise AuthorizationError(
                "You are not a participant of this conversation",
                data={"conversation_id": conversation_id},
            )
        return membership

    def ref_for(self, conversation: ConversationRecord) -> ConversationRef:
        if conversation.kind is ConversationKind.GROUP and conversation.group_id is not None:
            return ConversationRef.group(conversation.group_id)
        if conversation.kind is ConversationKind.CHANNEL and conversation.channel_id is not None:
            return ConversationRef.channel(conversation.channel_id)
        return ConversationRef.direct(conversation.id)

    # -- sending -------------------------------------------------------

    async def send_direct(
        self,
        sender_id: int,
        recipient_id: int,
        draft: MessageDraft,
        *,
        origin_session: str | None = None,
    ) -> SendResult:
        """Send to a user, creating the pair's direct chat on first contact."""
        if sender_id == recipient_id:
            raise ValidationError("You cannot message yourself")
        sender = self._user(sender_id)
        self._user(recipient_id)

        def _write() -> tuple[ConversationRecord, bool, MessageRecord]:
            conversation, created = self.store.get_or_create_direct(sender_id, recipient_id)
            message = self._append(conversation, sender_id, draft)
            return conversation, created, message

        conversation, created, message = await self.store.atomic_async("send_direct", _write)
        if created:
            logger.info("Created direct chat %s between %s and %s", conversation.id, sender_id, recipient_id)
        message = await self._publish(conversation, message, origin_session)

        preview = draft.content if draft.message_type == "text" else f"Sent a {draft.message_type}"
        await self.notifier.notify(
            recipient_id,
            "message",
            title=f"New Message from {sender.name}",
            message=preview,
            data={"chat_id": conversation.id, "sender_id": sender_id},
        )
        return SendResult(conversation=conversation, message=message, created_conversation=created)

    async def send(
        self,
        sender_id: int,
        ref: ConversationRef,
        draft: MessageDraft,
        *,
        origin_session: str | None = None,
    ) -> SendResult:
        """Send into an existing conversation the sender belongs to."""
        membership = self._require_member(sender_id, ref)
        if not membership.can_send:
            raise AuthorizationError(
                "You are not allowed to send messages here",
                data={"kind": ref.kind.value, "id": ref.id, "role": membership.role},
            )
        conversation = membership.conversation
        message = await self.store.atomic_async(
            "send_message", lambda: self._append(conversation, sender_id, draft)
        )
        message = await self._publish(conversation, message, origin_session)
        return SendResult(conversation=conversation, message=message)

    def _append(self, conversation: ConversationRecord, sender_id: int, draft: MessageDraft) -> MessageRecord:
        return self.store.append_message(
            conversation.id,
            sender_id,
            message_type=draft.message_type,
            content=draft.content,
            file_path=draft.file_path,
            duration=draft.duration,
        )

    async def _publish(
        self,
        conversation: ConversationRecord,
        message: MessageRecord,
        origin_session: str | None,
    ) -> MessageRecord:
        result = await self.dispatcher.dispatch(
            events.message_created(conversation, message, origin_session=origin_session)
        )
        if not result.reached_other_than(message.sender_id):
            return message
        if await self.delivery.mark_delivered(message.id):
            message = self.store.get_message(message.id) or message
            await self.dispatcher.dispatch(events.message_delivered(conversation, message))
        return message

    # -- reading -------------------------------------------------------

    def open_direct(self, actor_id: int, other_id: int) -> tuple[ConversationRecord, User]:
        """Return (creating if needed) the direct chat with another user."""
        if actor_id == other_id:
            raise ValidationError("You cannot open a chat with yourself")
        other = self._user(other_id)
        conversation, created = self.store.atomic(
            "open_direct", lambda: self.store.get_or_create_direct(actor_id, other_id)
        )
        if created:
            logger.info("Created direct chat %s between %s and %s", conversation.id, actor_id, other_id)
        return conversation, other

    async def fetch_messages(
        self,
        viewer_id: int,
        ref: ConversationRef,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[MessageRecord]:
        """Return one page and record that the viewer received and saw it."""
        membership = self._require_member(viewer_id, ref)
        conversation = membership.conversation
        limit = min(max(1, limit or settings.message_page_default), settings.message_page_max)
        page = await self.store.read_async(
            "page_messages",
            lambda: self.store.page_messages(conversation.id, limit, max(0, offset)),
        )
        await self.delivery.confirm_pulled(conversation.id, viewer_id)
        if conversation.kind is ConversationKind.CHANNEL and self.store.get_participant(
            conversation.id, viewer_id
        ):
            await self.store.atomic_async(
                "touch_last_read", lambda: self.store.touch_last_read(conversation.id, viewer_id)
            )
        await self._seen(conversation, viewer_id, None)
        return page

    async def mark_seen(
        self, viewer_id: int, ref: ConversationRef, *, origin_session: str | None = None
    ) -> SeenBatch:
        membership = self._require_member(viewer_id, ref)
        return await self._seen(membership.conversation, viewer_id, origin_session)

    async def _seen(
        self, conversation: ConversationRecord, viewer_id: int, origin_session: str | None
    ) -> SeenBatch:
        batch = await self.delivery.mark_seen(conversation.id, viewer_id)
        if batch.count:
            viewer = self.db.get(User, viewer_id)
            await self.dispatcher.dispatch(
                events.indicator(
                    EventName.MESSAGE_SEEN,
                    conversation,
                    viewer_id,
                    viewer.name if viewer else None,
                    origin_session=origin_session,
                )
            )
        return batch

    async def acknowledge(self, viewer_id: int, message_id: int) -> bool:
        """Delivery acknowledgement sent by a recipient's live session."""
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError("Message not found", data={"message_id": message_id})
        membership = self._conversation_membership(viewer_id, message.conversation_id)
        if message.sender_id == viewer_id:
            return False
        if not await self.delivery.mark_delivered(message_id):
            return False
        refreshed = self.store.get_message(message_id) or message
        await self.dispatcher.dispatch(events.message_delivered(membership.conversation, refreshed))
        return True

    async def indicate(
        self,
        actor_id: int,
        ref: ConversationRef,
        name: EventName,
        *,
        origin_session: str | None = None,
    ) -> None:
        """Relay a typing or stop-typing indicator to the other members."""
        if name not in INDICATOR_EVENTS:
            raise ValidationError(f"{name.value} is not an indicator event")
        membership = self._require_member(actor_id, ref)
        actor = self.db.get(User, actor_id)
        await self.dispatcher.dispatch(
            events.indicator(
                name,
                membership.conversation,
                actor_id,
                actor.name if actor else None,
                origin_session=origin_session,
            )
        )

    def unread_count(self, viewer_id: int, ref: ConversationRef) -> int:
        membership = self._require_member(viewer_id, ref)
        return self.delivery.unread_count(membership.conversation.id, viewer_id)

    def list_media(
        self, viewer_id: int, ref: ConversationRef, message_type: str | None = None
    ) -> list[MessageRecord]:
        if message_type is not None and message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unsupported message type {message_type!r}")
        membership = self._require_member(viewer_id, ref)
        return self.store.read(
            "list_media", lambda: self.store.list_media(membership.conversation.id, message_type)
        )

    async def delete_message(self, actor_id: int, message_id: int) -> None:
        """Hard-delete a message; only its sender may do so."""
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError("Message not found", data={"message_id": message_id})
        if message.sender_id != actor_id:
            raise AuthorizationError("Only the sender can delete a message")
        conversation = self.store.get_conversation(message.conversation_id)
        await self.store.atomic_async(
            "delete_message", lambda: self.store.delete_message(message_id, actor_id)
        )
        if conversation is not None:
            await self.dispatcher.dispatch(events.message_deleted(conversation, message_id, actor_id))

    def list_conversations(self, user_id: int) -> list[ConversationSummary]:
        """The user's conversations with last message and unread count, newest activity first."""
        summaries: list[ConversationSummary] = []
        for conversation in self.store.list_for_user(user_id):
            title, peer_id = self._title(conversation, user_id)
            if title is None and conversation.kind is not ConversationKind.DIRECT:
                continue
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    last_message=self.store.last_message(conversation.id),
                    unread_count=self.store.count_unseen(conversation.id, user_id),
                    title=title,
                    peer_id=peer_id,
                )
            )

        def _activity(summary: ConversationSummary) -> datetime:
            last = summary.last_message
            return as_utc(last.created_at if last else summary.conversation.created_at)

        summaries.sort(key=_activity, reverse=True)
        return summaries

    def _title(self, conversation: ConversationRecord, user_id: int) -> tuple[str | None, int | None]:
        if conversation.kind is ConversationKind.GROUP:
            group = self.db.get(Group, conversation.group_id)
            return (group.name if group else None), None
        if conversation.kind is ConversationKind.CHANNEL:
            channel = self.db.scalar(
                select(Channel).where(
                    Channel.id == conversation.channel_id, Channel.deleted_at.is_(None)
                )
            )
            return (f"#{channel.name}" if channel else None), None
        pair = conversation.direct_pair or ()
        peer_id = next((uid for uid in pair if uid != user_id), None)
        peer = self.db.get(User, peer_id) if peer_id is not None else None
        return (peer.name if peer else None), peer_id
