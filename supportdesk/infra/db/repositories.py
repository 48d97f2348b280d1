from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.domain.enums import (
    QUEUED_STATUSES,
    ConversationStatus,
    SenderKind,
    UserRole,
)
from supportdesk.infra.db.models import AuditLog, Conversation, Message, UserAccount


def advisory_lock_key(company_id: UUID) -> int:
    return int.from_bytes(company_id.bytes[:8], "big", signed=True)


class ConversationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, conversation_id: UUID) -> Conversation | None:
        return await self.session.get(Conversation, conversation_id)

    async def create(
        self,
        company_id: UUID,
        queue_position: int | None,
        status: ConversationStatus = ConversationStatus.WAITING,
        client_user_id: UUID | None = None,
        client_name: str | None = None,
        client_email: str | None = None,
        metadata_json: dict | None = None,
    ) -> Conversation:
        now = datetime.now(UTC)
        conversation = Conversation(
            company_id=company_id,
            status=status,
            queue_position=queue_position,
            started_at=now,
            queued_at=now,
            client_user_id=client_user_id,
            client_name=client_name,
            client_email=client_email,
            metadata_json=metadata_json or {},
        )
        self.session.add(conversation)
        await self.session.flush()
        return conversation

    async def update_fields(self, conversation: Conversation, **fields: Any) -> Conversation:
        for name, value in fields.items():
            setattr(conversation, name, value)
        conversation.updated_at = datetime.now(UTC)
        await self.session.flush()
        return conversation

    async def lock_company_queue(self, company_id: UUID) -> None:
        """Take a transaction-scoped advisory lock on PostgreSQL; no-op elsewhere."""
        if self.session.bind is None or self.session.bind.dialect.name != "postgresql":
            return
        await self.session.execute(
            select(func.pg_advisory_xact_lock(advisory_lock_key(company_id)))
        )

    async def max_queued_position(self, company_id: UUID) -> int:
        stmt: Select[tuple[int | None]] = select(func.max(Conversation.queue_position)).where(
            Conversation.company_id == company_id,
            Conversation.status.in_(QUEUED_STATUSES),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def list_waiting(self, company_id: UUID) -> list[Conversation]:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.company_id == company_id,
                Conversation.status == ConversationStatus.WAITING,
            )
            .order_by(Conversation.queued_at.asc(), Conversation.id.asc())
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_queue(self, company_id: UUID) -> list[Conversation]:
        stmt: Select[tuple[Conversation]] = (
            select(Conversation)
            .where(
                Conversation.company_id == company_id,
                Conversation.status.in_(QUEUED_STATUSES),
            )
            .order_by(
                Conversation.queue_position.is_(None),
                Conversation.queue_position.asc(),
                Conversation.queued_at.asc(),
            )
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class MessageRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        conversation_id: UUID,
        sender_kind: SenderKind,
        content_text: str,
        content_json: dict,
        sender_id: UUID | None = None,
        attachments: list[dict] | None = None,
        audio_url: str | None = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_kind=sender_kind,
            content_text=content_text,
            content_json=content_json,
            attachments=attachments,
            audio_url=audio_url,
            created_at=datetime.now(UTC),
        )
        self.session.add(message)
        await self.session.flush()
        await self.session.refresh(message)
        return message

    async def get_by_id(self, message_id: UUID) -> Message | None:
        return await self.session.get(Message, message_id)

    async def update_content(
        self,
        message: Message,
        content_json: dict,
        content_text: str | None = None,
        deleted_at: datetime | None = None,
    ) -> Message:
        # JSON columns are not mutation-tracked; always assign a fresh dict.
        message.content_json = dict(content_json)
        if content_text is not None:
            message.content_text = content_text
        if deleted_at is not None:
            message.deleted_at = deleted_at
        message.updated_at = datetime.now(UTC)
        await self.session.flush()
        return message

    async def list_by_conversation(
        self,
        conversation_id: UUID,
        limit: int = 50,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> list[Message]:
        stmt: Select[tuple[Message]] = select(Message).where(
            Message.conversation_id == conversation_id
        )
        if not include_deleted:
            stmt = stmt.where(Message.deleted_at.is_(None))
        stmt = (
            stmt.order_by(Message.created_at.asc(), Message.id.asc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_recent(self, conversation_id: UUID, limit: int) -> list[Message]:
        stmt: Select[tuple[Message]] = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def latest(self, conversation_id: UUID) -> Message | None:
        recent = await self.list_recent(conversation_id, limit=1)
        return recent[0] if recent else None


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, user_id: UUID) -> UserAccount | None:
        return await self.session.get(UserAccount, user_id)

    async def get_many(self, user_ids: Iterable[UUID | None]) -> dict[UUID, UserAccount]:
        wanted = {user_id for user_id in user_ids if user_id is not None}
        if not wanted:
            return {}
        stmt: Select[tuple[UserAccount]] = select(UserAccount).where(UserAccount.id.in_(wanted))
        result = await self.session.execute(stmt)
        return {user.id: user for user in result.scalars().all()}

    async def create(
        self,
        display_name: str,
        role: UserRole,
        company_id: UUID | None = None,
        email: str | None = None,
    ) -> UserAccount:
        user = UserAccount(
            display_name=display_name,
            role=role,
            company_id=company_id,
            email=email,
        )
        self.session.add(user)
        await self.session.flush()
        return user


class AuditLogRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def add(
        self,
        action: str,
        actor_id: UUID | None,
        target_id: UUID | None = None,
        target_type: str | None = None,
        company_id: UUID | None = None,
        payload: dict | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            target_id=target_id,
            target_type=target_type,
            company_id=company_id,
            payload=payload,
        )
        self.session.add(entry)
        return entry

    async def list_for_target(self, target_id: UUID) -> list[AuditLog]:
        stmt: Select[tuple[AuditLog]] = (
            select(AuditLog)
            .where(AuditLog.target_id == target_id)
            .order_by(AuditLog.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
