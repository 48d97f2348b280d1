import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.core.config import Settings, get_settings
from supportdesk.core.security import IdentityClaims
from supportdesk.domain.content import build_payload
from supportdesk.domain.enums import (
    AuditAction,
    ConversationStatus,
    MessageType,
    SenderKind,
    TransitionAction,
)
from supportdesk.domain.exceptions import InvalidConversationTransition
from supportdesk.domain.state_machine import ConversationLifecycle
from supportdesk.infra.db.models import Conversation, Message
from supportdesk.infra.db.repositories import (
    ConversationRepository,
    MessageRepository,
    UserRepository,
)
from supportdesk.infra.realtime.publisher import NotificationBus
from supportdesk.schemas.events import sender_display_name
from supportdesk.services.audit import AuditSink, SessionAuditSink
from supportdesk.services.errors import (
    ActorForbiddenError,
    ConversationNotFoundError,
)
from supportdesk.services.notifications import ConversationNotifier
from supportdesk.services.queue_service import (
    PositionChange,
    QueueEntry,
    QueueLocks,
    QueueManager,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StartConversationResult:
    conversation: Conversation
    queue_position: int
    status: ConversationStatus
    estimated_wait_minutes: int
    initial_message: Message | None


@dataclass(slots=True)
class QueueStatus:
    conversation_id: UUID
    status: ConversationStatus
    queue_position: int | None
    agent_id: UUID | None
    agent_name: str | None
    last_message: str | None
    estimated_wait_minutes: int | None


class ConversationService:
    def __init__(
        self,
        session: AsyncSession,
        conversations: ConversationRepository | None = None,
        messages: MessageRepository | None = None,
        users: UserRepository | None = None,
        bus: NotificationBus | None = None,
        locks: QueueLocks | None = None,
        audit: AuditSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.conversations = conversations or ConversationRepository(session)
        self.messages = messages or MessageRepository(session)
        self.users = users or UserRepository(session)
        self.audit = audit or SessionAuditSink(session)
        self.queue = QueueManager(
            session,
            conversations=self.conversations,
            messages=self.messages,
            users=self.users,
            locks=locks,
            minutes_per_position=self.settings.queue_minutes_per_position,
        )
        self.notifier = ConversationNotifier(
            bus, minutes_per_position=self.settings.queue_minutes_per_position
        )

    async def start_conversation(
        self,
        company_id: UUID,
        client_user_id: UUID | None = None,
        client_name: str | None = None,
        client_email: str | None = None,
        initial_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StartConversationResult:
        cleaned_name = client_name.strip() if client_name and client_name.strip() else None
        initial_text = initial_message.strip() if initial_message else ""

        message: Message | None = None
        async with self.queue.serialized(company_id):
            position = await self.queue.enqueue(company_id)
            conversation = await self.conversations.create(
                company_id=company_id,
                queue_position=position,
                status=ConversationStatus.WAITING,
                client_user_id=client_user_id,
                client_name=cleaned_name,
                client_email=client_email,
                metadata_json=metadata,
            )
            if initial_text:
                payload = build_payload(MessageType.TEXT, initial_text)
                message = await self.messages.create(
                    conversation_id=conversation.id,
                    sender_kind=SenderKind.CLIENT,
                    content_text=payload.content,
                    content_json=payload.to_json(),
                    sender_id=client_user_id,
                )
            await self.session.commit()

        logger.info(
            "Conversation %s started for company %s at position %d",
            conversation.id,
            company_id,
            position,
        )

        if message is not None:
            sender = (
                await self.users.get_by_id(client_user_id) if client_user_id else None
            )
            await self.notifier.message_created(
                message,
                company_id,
                sender_display_name(SenderKind.CLIENT, sender, conversation),
            )

        return StartConversationResult(
            conversation=conversation,
            queue_position=position,
            status=conversation.status,
            estimated_wait_minutes=self.queue.estimate_wait(position),
            initial_message=message,
        )

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self.conversations.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def get_queue_status(self, conversation_id: UUID) -> QueueStatus:
        conversation = await self.get_conversation(conversation_id)
        agent_name: str | None = None
        if conversation.agent_user_id is not None:
            agent = await self.users.get_by_id(conversation.agent_user_id)
            agent_name = sender_display_name(SenderKind.AGENT, agent)

        last_message = await self.messages.latest(conversation.id)
        estimated_wait: int | None = None
        if conversation.status == ConversationStatus.WAITING:
            estimated_wait = self.queue.estimate_wait(conversation.queue_position or 0)

        return QueueStatus(
            conversation_id=conversation.id,
            status=conversation.status,
            queue_position=conversation.queue_position,
            agent_id=conversation.agent_user_id,
            agent_name=agent_name,
            last_message=last_message.content_text if last_message else None,
            estimated_wait_minutes=estimated_wait,
        )

    async def assign(
        self,
        conversation_id: UUID,
        agent_id: UUID,
        actor_id: UUID | None = None,
    ) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        async with self.queue.serialized(conversation.company_id):
            await self.session.refresh(conversation)
            changes = await self.apply_assign(conversation, agent_id, actor_id)
            await self.session.commit()

        await self.publish_assignment(conversation, changes)
        return conversation

    async def apply_assign(
        self,
        conversation: Conversation,
        agent_id: UUID,
        actor_id: UUID | None = None,
    ) -> list[PositionChange]:
        """Assign inside the caller's serialized section. Does not commit."""
        next_status = ConversationLifecycle.transition(
            conversation.status, TransitionAction.ASSIGN
        )
        await self.conversations.update_fields(
            conversation,
            status=next_status,
            agent_user_id=agent_id,
            queue_position=None,
        )
        changes = await self.queue.reorganize(conversation.company_id)
        self.audit.record(
            actor_id or agent_id,
            AuditAction.CONVERSATION_ASSIGN,
            {"agent_id": str(agent_id)},
            target_id=conversation.id,
            company_id=conversation.company_id,
        )
        logger.info("Conversation %s assigned to agent %s", conversation.id, agent_id)
        return changes

    async def publish_assignment(
        self,
        conversation: Conversation,
        changes: list[PositionChange],
        previous_agent_id: UUID | None = None,
    ) -> None:
        agent = await self.users.get_by_id(conversation.agent_user_id)
        await self.notifier.conversation_assigned(
            conversation,
            sender_display_name(SenderKind.AGENT, agent),
            previous_agent_id=previous_agent_id,
        )
        await self.notifier.queue_updated(changes)

    async def close(self, conversation_id: UUID, actor_id: UUID | None = None) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        async with self.queue.serialized(conversation.company_id):
            await self.session.refresh(conversation)
            was_waiting = ConversationLifecycle.holds_queue_position(conversation.status)
            next_status = ConversationLifecycle.transition(
                conversation.status, TransitionAction.CLOSE
            )
            closed_at = datetime.now(UTC)
            await self.conversations.update_fields(
                conversation,
                status=next_status,
                closed_at=closed_at,
                queue_position=None,
            )
            changes: list[PositionChange] = []
            if was_waiting:
                changes = await self.queue.reorganize(conversation.company_id)
            self.audit.record(
                actor_id,
                AuditAction.CONVERSATION_CLOSE,
                {"was_waiting": was_waiting},
                target_id=conversation.id,
                company_id=conversation.company_id,
            )
            await self.session.commit()

        logger.info("Conversation %s closed by %s", conversation.id, actor_id)
        await self.notifier.conversation_closed(conversation, closed_at, actor_id)
        await self.notifier.queue_updated(changes)
        return conversation

    async def reopen(self, conversation_id: UUID, actor_id: UUID | None = None) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        async with self.queue.serialized(conversation.company_id):
            await self.session.refresh(conversation)
            next_status = ConversationLifecycle.transition(
                conversation.status, TransitionAction.REOPEN
            )
            position = await self.queue.enqueue(conversation.company_id)
            await self.conversations.update_fields(
                conversation,
                status=next_status,
                queue_position=position,
                queued_at=datetime.now(UTC),
                closed_at=None,
                agent_user_id=None,
            )
            self.audit.record(
                actor_id,
                AuditAction.CONVERSATION_REOPEN,
                {"queue_position": position},
                target_id=conversation.id,
                company_id=conversation.company_id,
            )
            await self.session.commit()

        logger.info("Conversation %s reopened at position %d", conversation.id, position)
        await self.notifier.conversation_reopened(conversation)
        await self.notifier.queue_updated(
            [PositionChange(conversation=conversation, position=position)]
        )
        return conversation

    async def transfer(
        self,
        conversation_id: UUID,
        new_agent_id: UUID,
        actor_id: UUID | None = None,
    ) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        next_status = ConversationLifecycle.transition(
            conversation.status, TransitionAction.TRANSFER
        )
        previous_agent_id = conversation.agent_user_id
        if previous_agent_id == new_agent_id:
            raise InvalidConversationTransition(
                current=conversation.status, action=TransitionAction.TRANSFER
            )

        await self.conversations.update_fields(
            conversation, status=next_status, agent_user_id=new_agent_id
        )
        self.audit.record(
            actor_id,
            AuditAction.CONVERSATION_TRANSFER,
            {
                "from_agent_id": str(previous_agent_id) if previous_agent_id else None,
                "to_agent_id": str(new_agent_id),
            },
            target_id=conversation.id,
            company_id=conversation.company_id,
        )
        await self.session.commit()

        logger.info(
            "Conversation %s transferred from %s to %s",
            conversation.id,
            previous_agent_id,
            new_agent_id,
        )
        await self.publish_assignment(conversation, [], previous_agent_id=previous_agent_id)
        return conversation

    async def update_queue(
        self,
        conversation_id: UUID,
        actor: IdentityClaims,
        status: ConversationStatus | None = None,
        agent_user_id: UUID | None = None,
    ) -> Conversation:
        """Apply an agent's queue command by routing it to a lifecycle transition."""
        conversation = await self.get_conversation(conversation_id)
        self._authorize_staff(actor, conversation)

        target = status
        if target is None:
            if agent_user_id is None:
                return conversation
            target = ConversationStatus.ASSIGNED

        current = conversation.status
        if target == ConversationStatus.ASSIGNED:
            agent_id = agent_user_id or actor.user_id
            if current == ConversationStatus.ASSIGNED:
                return await self.transfer(conversation_id, agent_id, actor_id=actor.user_id)
            return await self.assign(conversation_id, agent_id, actor_id=actor.user_id)

        if target == ConversationStatus.CLOSED:
            return await self.close(conversation_id, actor_id=actor.user_id)

        if current == ConversationStatus.CLOSED:
            return await self.reopen(conversation_id, actor_id=actor.user_id)

        raise InvalidConversationTransition(current=current, action=TransitionAction.REOPEN)

    async def active_queue(
        self, company_id: UUID, actor: IdentityClaims
    ) -> list[QueueEntry]:
        if not actor.is_staff or actor.company_id != company_id:
            raise ActorForbiddenError("Only staff of this company can view its queue")
        return await self.queue.active_queue(company_id)

    @staticmethod
    def authorize_participant(identity: IdentityClaims, conversation: Conversation) -> None:
        """Staff of the owning company, or the client who owns the conversation."""
        if identity.is_staff:
            if identity.company_id != conversation.company_id:
                raise ActorForbiddenError("Conversation belongs to another company")
            return
        owner = conversation.client_user_id
        if owner is not None and owner != identity.user_id:
            raise ActorForbiddenError("Conversation belongs to another client")

    @staticmethod
    def _authorize_staff(actor: IdentityClaims, conversation: Conversation) -> None:
        if not actor.is_staff:
            raise ActorForbiddenError("Only agents and managers can update the queue")
        if actor.company_id != conversation.company_id:
            raise ActorForbiddenError("Conversation belongs to another company")
