import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from supportdesk.domain.enums import MessageStatus
from supportdesk.infra.db.models import Conversation, Message
from supportdesk.infra.realtime.events import NotificationTopic
from supportdesk.infra.realtime.publisher import NoopNotificationBus, NotificationBus
from supportdesk.schemas.events import (
    ConversationAssigned,
    ConversationClosed,
    ConversationReopened,
    MessageCreated,
    MessageStatusUpdated,
    MessageUpdated,
    MessageView,
    QueueUpdated,
)
from supportdesk.services.queue_service import PositionChange

logger = logging.getLogger(__name__)


class ConversationNotifier:
    """Publishes committed changes on the notification bus.

    Callers must only use this after ``session.commit()``. A failing publish is
    logged and re-raised so the caller reports it; the stored state is kept.
    """

    def __init__(self, bus: NotificationBus | None = None, minutes_per_position: int = 5) -> None:
        self.bus = bus or NoopNotificationBus()
        self.minutes_per_position = minutes_per_position

    async def message_created(
        self, message: Message, company_id: UUID, sender_name: str
    ) -> None:
        await self._publish(
            NotificationTopic.MESSAGE_CREATED,
            MessageCreated(
                conversation_id=message.conversation_id,
                company_id=company_id,
                message=MessageView.from_message(message, sender_name),
            ),
        )

    async def message_updated(self, message: Message, change: str, sender_name: str) -> None:
        await self._publish(
            NotificationTopic.MESSAGE_UPDATED,
            MessageUpdated(
                conversation_id=message.conversation_id,
                change=change,
                message=MessageView.from_message(message, sender_name),
            ),
        )

    async def message_status_updated(
        self, message: Message, status: MessageStatus, user_id: UUID | None
    ) -> None:
        await self._publish(
            NotificationTopic.MESSAGE_STATUS_UPDATED,
            MessageStatusUpdated(
                conversation_id=message.conversation_id,
                message_id=message.id,
                status=status,
                user_id=user_id,
            ),
        )

    async def conversation_assigned(
        self,
        conversation: Conversation,
        agent_name: str,
        previous_agent_id: UUID | None = None,
    ) -> None:
        await self._publish(
            NotificationTopic.CONVERSATION_ASSIGNED,
            ConversationAssigned(
                conversation_id=conversation.id,
                company_id=conversation.company_id,
                agent_id=conversation.agent_user_id,
                agent_name=agent_name,
                previous_agent_id=previous_agent_id,
            ),
        )

    async def conversation_closed(
        self, conversation: Conversation, closed_at: datetime, closed_by: UUID | None
    ) -> None:
        await self._publish(
            NotificationTopic.CONVERSATION_CLOSED,
            ConversationClosed(
                conversation_id=conversation.id,
                company_id=conversation.company_id,
                closed_at=closed_at,
                closed_by=closed_by,
            ),
        )

    async def conversation_reopened(self, conversation: Conversation) -> None:
        await self._publish(
            NotificationTopic.CONVERSATION_REOPENED,
            ConversationReopened(
                conversation_id=conversation.id,
                company_id=conversation.company_id,
                queue_position=conversation.queue_position or 0,
            ),
        )

    async def queue_updated(self, changes: Iterable[PositionChange]) -> None:
        for change in changes:
            await self._publish(
                NotificationTopic.QUEUE_UPDATED,
                QueueUpdated(
                    conversation_id=change.conversation.id,
                    company_id=change.conversation.company_id,
                    position=change.position,
                    estimated_wait=change.position * self.minutes_per_position,
                ),
            )

    async def _publish(self, topic: NotificationTopic, event: BaseModel) -> None:
        try:
            await self.bus.publish(topic, event.model_dump(mode="json"))
        except Exception:
            logger.exception("Failed to publish %s", topic.value)
            raise
