import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.core.config import get_settings
from supportdesk.domain.enums import ConversationStatus
from supportdesk.infra.db.models import Conversation
from supportdesk.infra.db.repositories import (
    ConversationRepository,
    MessageRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)

ANONYMOUS_CLIENT_NAME = "Anonymous"


class QueueLocks:
    """Per-company locks shared by every queue writer of this process."""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_company(self, company_id: UUID) -> asyncio.Lock:
        return self._locks[company_id]


@dataclass(slots=True)
class PositionChange:
    conversation: Conversation
    position: int


@dataclass(slots=True)
class QueueEntry:
    conversation_id: UUID
    rank: int
    queue_position: int | None
    client_name: str
    started_at: datetime
    last_message: str | None
    status: ConversationStatus


class QueueManager:
    """Queue positions for one company's waiting conversations.

    ``enqueue`` and ``reorganize`` read and then write positions, so callers
    run them inside ``serialized(company_id)`` and commit before leaving it.
    """

    def __init__(
        self,
        session: AsyncSession,
        conversations: ConversationRepository | None = None,
        messages: MessageRepository | None = None,
        users: UserRepository | None = None,
        locks: QueueLocks | None = None,
        minutes_per_position: int | None = None,
    ) -> None:
        self.session = session
        self.conversations = conversations or ConversationRepository(session)
        self.messages = messages or MessageRepository(session)
        self.users = users or UserRepository(session)
        self.locks = locks or QueueLocks()
        self.minutes_per_position = (
            minutes_per_position
            if minutes_per_position is not None
            else get_settings().queue_minutes_per_position
        )

    @asynccontextmanager
    async def serialized(self, company_id: UUID) -> AsyncIterator[None]:
        async with self.locks.for_company(company_id):
            await self.conversations.lock_company_queue(company_id)
            try:
                yield
            except Exception:
                # Releases the advisory lock along with the partial changes.
                await self.session.rollback()
                raise

    async def enqueue(self, company_id: UUID) -> int:
        return await self.conversations.max_queued_position(company_id) + 1

    async def reorganize(self, company_id: UUID) -> list[PositionChange]:
        waiting = await self.conversations.list_waiting(company_id)
        changes: list[PositionChange] = []
        for position, conversation in enumerate(waiting, start=1):
            if conversation.queue_position == position:
                continue
            await self.conversations.update_fields(conversation, queue_position=position)
            changes.append(PositionChange(conversation=conversation, position=position))

        if changes:
            logger.info(
                "Queue reorganized for company %s: %d waiting, %d moved",
                company_id,
                len(waiting),
                len(changes),
            )
        return changes

    def estimate_wait(self, position: int) -> int:
        return max(position, 0) * self.minutes_per_position

    async def active_queue(self, company_id: UUID) -> list[QueueEntry]:
        conversations = await self.conversations.list_active_queue(company_id)
        clients = await self.users.get_many(
            conversation.client_user_id for conversation in conversations
        )

        entries: list[QueueEntry] = []
        for rank, conversation in enumerate(conversations, start=1):
            last_message = await self.messages.latest(conversation.id)
            entries.append(
                QueueEntry(
                    conversation_id=conversation.id,
                    rank=rank,
                    queue_position=conversation.queue_position,
                    client_name=self._client_name(conversation, clients),
                    started_at=conversation.started_at,
                    last_message=last_message.content_text if last_message else None,
                    status=conversation.status,
                )
            )
        return entries

    @staticmethod
    def _client_name(conversation: Conversation, clients: dict) -> str:
        if conversation.client_name:
            return conversation.client_name
        client = clients.get(conversation.client_user_id)
        if client is not None:
            return client.display_name
        return ANONYMOUS_CLIENT_NAME
