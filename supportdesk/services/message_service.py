import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.core.config import Settings, get_settings
from supportdesk.domain.content import (
    DELETED_MESSAGE_TOMBSTONE,
    MessagePayload,
    ReplyReference,
    build_payload,
    parse_payload,
    truncate_preview,
)
from supportdesk.domain.enums import MessageStatus, MessageType, SenderKind
from supportdesk.domain.exceptions import InvalidMessageContent
from supportdesk.domain.state_machine import ConversationLifecycle
from supportdesk.infra.db.models import Conversation, Message
from supportdesk.infra.db.repositories import (
    ConversationRepository,
    MessageRepository,
    UserRepository,
)
from supportdesk.infra.realtime.publisher import NotificationBus
from supportdesk.schemas.events import MessageView, sender_display_name
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.errors import (
    ConversationClosedError,
    ConversationNotFoundError,
    MessageEditForbiddenError,
    MessageNotFoundError,
    MessageValidationError,
)
from supportdesk.services.queue_service import PositionChange, QueueLocks

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SavedMessage:
    message: Message
    conversation: Conversation
    assigned_now: bool


class MessageIngressService:
    """Validates, persists and announces conversation messages.

    Every write commits before anything is published, so subscribers never
    observe a message that a rollback could still remove.
    """

    def __init__(
        self,
        session: AsyncSession,
        conversations: ConversationRepository | None = None,
        messages: MessageRepository | None = None,
        users: UserRepository | None = None,
        bus: NotificationBus | None = None,
        locks: QueueLocks | None = None,
        settings: Settings | None = None,
        conversation_service: ConversationService | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.conversations = conversations or ConversationRepository(session)
        self.messages = messages or MessageRepository(session)
        self.users = users or UserRepository(session)
        self.conversation_service = conversation_service or ConversationService(
            session,
            conversations=self.conversations,
            messages=self.messages,
            users=self.users,
            bus=bus,
            locks=locks,
            settings=self.settings,
        )
        self.notifier = self.conversation_service.notifier

    async def save_message(
        self,
        conversation_id: UUID,
        sender_id: UUID | None,
        sender_kind: SenderKind,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
        metadata: dict[str, Any] | None = None,
        reply_to_id: UUID | None = None,
        mentions: Iterable[UUID | str] | None = None,
    ) -> SavedMessage:
        cleaned_content = (content or "").strip()
        if not cleaned_content:
            raise MessageValidationError("Message content cannot be empty.")

        conversation = await self.conversations.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        self._assert_writable(conversation)

        reply_to = await self._reply_reference(conversation.id, reply_to_id)
        try:
            payload = build_payload(
                message_type,
                cleaned_content,
                metadata=metadata,
                reply_to=reply_to,
                mentions=[str(mention) for mention in mentions or []],
            )
        except (InvalidMessageContent, ValueError) as exc:
            raise MessageValidationError(str(exc)) from exc

        changes: list[PositionChange] = []
        assigned_now = False
        sender_is_agent = sender_kind == SenderKind.AGENT

        if sender_id is not None and ConversationLifecycle.should_auto_assign(
            conversation.status, sender_is_agent
        ):
            queue = self.conversation_service.queue
            async with queue.serialized(conversation.company_id):
                # Another agent may have answered first; re-read under the lock.
                await self.session.refresh(conversation)
                self._assert_writable(conversation)
                message = await self._persist(conversation, sender_id, sender_kind, payload)
                if ConversationLifecycle.should_auto_assign(conversation.status, True):
                    changes = await self.conversation_service.apply_assign(
                        conversation, sender_id, actor_id=sender_id
                    )
                    assigned_now = True
                await self.session.commit()
        else:
            message = await self._persist(conversation, sender_id, sender_kind, payload)
            await self.session.commit()

        logger.info(
            "Message %s saved in conversation %s by %s %s",
            message.id,
            conversation.id,
            sender_kind.value,
            sender_id,
        )

        sender = await self.users.get_by_id(sender_id) if sender_id is not None else None
        await self.notifier.message_created(
            message,
            conversation.company_id,
            sender_display_name(sender_kind, sender, conversation),
        )
        if assigned_now:
            await self.conversation_service.publish_assignment(conversation, changes)

        return SavedMessage(message=message, conversation=conversation, assigned_now=assigned_now)

    async def edit_message(self, message_id: UUID, new_content: str, edited_by: UUID) -> Message:
        cleaned_content = (new_content or "").strip()
        if not cleaned_content:
            raise MessageValidationError("Message content cannot be empty.")

        message, payload = await self._load_own_message(message_id, edited_by)
        if payload.is_deleted:
            raise MessageValidationError("Deleted messages cannot be edited.")

        payload.edit(cleaned_content, str(edited_by), datetime.now(UTC))
        await self.messages.update_content(
            message, payload.to_json(), content_text=cleaned_content
        )
        await self.session.commit()

        logger.info("Message %s edited by %s (version %d)", message.id, edited_by, payload.version)
        await self._announce_update(message, "edited")
        return message

    async def delete_message(self, message_id: UUID, deleted_by: UUID) -> Message:
        message, payload = await self._load_own_message(message_id, deleted_by)
        if payload.is_deleted:
            return message

        now = datetime.now(UTC)
        payload.soft_delete(str(deleted_by), now)
        await self.messages.update_content(
            message,
            payload.to_json(),
            content_text=DELETED_MESSAGE_TOMBSTONE,
            deleted_at=now,
        )
        await self.session.commit()

        logger.info("Message %s deleted by %s", message.id, deleted_by)
        await self._announce_update(message, "deleted")
        return message

    async def add_reaction(self, message_id: UUID, symbol: str, user_id: UUID) -> Message:
        cleaned_symbol = self._clean_symbol(symbol)
        message = await self._get_message(message_id)
        payload = self._parse(message)
        if payload.add_reaction(cleaned_symbol, str(user_id)):
            await self.messages.update_content(message, payload.to_json())
            await self.session.commit()
            await self._announce_update(message, "reaction_added")
        return message

    async def remove_reaction(self, message_id: UUID, symbol: str, user_id: UUID) -> Message:
        cleaned_symbol = self._clean_symbol(symbol)
        message = await self._get_message(message_id)
        payload = self._parse(message)
        if payload.remove_reaction(cleaned_symbol, str(user_id)):
            await self.messages.update_content(message, payload.to_json())
            await self.session.commit()
            await self._announce_update(message, "reaction_removed")
        return message

    async def update_message_status(
        self,
        message_id: UUID,
        status: MessageStatus,
        user_id: UUID | None = None,
        conversation_id: UUID | None = None,
        notify: bool = True,
    ) -> Message:
        message = await self._get_message(message_id)
        if conversation_id is not None and message.conversation_id != conversation_id:
            raise MessageNotFoundError(message_id)

        payload = self._parse(message)
        payload.mark_status(status, datetime.now(UTC))
        await self.messages.update_content(message, payload.to_json())
        await self.session.commit()

        logger.debug("Message %s marked %s by %s", message.id, status.value, user_id)
        if notify:
            await self.notifier.message_status_updated(message, status, user_id)
        return message

    async def get_conversation_messages(
        self,
        conversation_id: UUID,
        limit: int = 50,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[Message]:
        conversation = await self.conversations.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return await self.messages.list_by_conversation(
            conversation_id,
            limit=limit,
            offset=offset,
            include_deleted=include_deleted,
        )

    async def list_recent(self, conversation_id: UUID, limit: int | None = None) -> list[Message]:
        return await self.messages.list_recent(
            conversation_id, limit or self.settings.join_history_limit
        )

    async def to_views(
        self, conversation: Conversation, messages: list[Message]
    ) -> list[MessageView]:
        senders = await self.users.get_many(message.sender_id for message in messages)
        return [
            MessageView.from_message(
                message,
                sender_display_name(
                    message.sender_kind, senders.get(message.sender_id), conversation
                ),
            )
            for message in messages
        ]

    async def _persist(
        self,
        conversation: Conversation,
        sender_id: UUID | None,
        sender_kind: SenderKind,
        payload: MessagePayload,
    ) -> Message:
        attachments, audio_url = self._attachment_columns(payload)
        return await self.messages.create(
            conversation_id=conversation.id,
            sender_kind=sender_kind,
            content_text=payload.content,
            content_json=payload.to_json(),
            sender_id=sender_id,
            attachments=attachments,
            audio_url=audio_url,
        )

    async def _reply_reference(
        self, conversation_id: UUID, reply_to_id: UUID | None
    ) -> ReplyReference | None:
        if reply_to_id is None:
            return None
        target = await self.messages.get_by_id(reply_to_id)
        if target is None or target.conversation_id != conversation_id:
            return None
        return ReplyReference(
            message_id=str(target.id),
            preview=truncate_preview(target.content_text, self.settings.reply_preview_length),
        )

    async def _load_own_message(
        self, message_id: UUID, user_id: UUID
    ) -> tuple[Message, MessagePayload]:
        message = await self._get_message(message_id)
        if message.sender_id != user_id:
            raise MessageEditForbiddenError(message_id, user_id)
        conversation = await self.conversations.get_by_id(message.conversation_id)
        if conversation is not None:
            self._assert_writable(conversation)
        return message, self._parse(message)

    async def _get_message(self, message_id: UUID) -> Message:
        message = await self.messages.get_by_id(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    async def _announce_update(self, message: Message, change: str) -> None:
        sender = (
            await self.users.get_by_id(message.sender_id)
            if message.sender_id is not None
            else None
        )
        conversation = await self.conversations.get_by_id(message.conversation_id)
        await self.notifier.message_updated(
            message,
            change,
            sender_display_name(message.sender_kind, sender, conversation),
        )

    @staticmethod
    def _parse(message: Message) -> MessagePayload:
        try:
            return parse_payload(message.content_json)
        except InvalidMessageContent as exc:
            raise MessageValidationError(str(exc)) from exc

    @staticmethod
    def _clean_symbol(symbol: str) -> str:
        cleaned = (symbol or "").strip()
        if not cleaned:
            raise MessageValidationError("Reaction symbol cannot be empty.")
        return cleaned

    @staticmethod
    def _assert_writable(conversation: Conversation) -> None:
        if ConversationLifecycle.is_read_only(conversation.status):
            raise ConversationClosedError(conversation.id)

    @staticmethod
    def _attachment_columns(
        payload: MessagePayload,
    ) -> tuple[list[dict[str, Any]] | None, str | None]:
        metadata = payload.metadata
        if metadata is None or not metadata.file_name:
            return None, None
        attachments = [
            {
                "name": metadata.file_name,
                "size": metadata.file_size,
                "type": metadata.mime_type,
            }
        ]
        audio_url = metadata.file_name if payload.type == MessageType.AUDIO.value else None
        return attachments, audio_url
