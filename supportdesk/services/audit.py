import logging
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.domain.enums import AuditAction
from supportdesk.infra.db.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        actor_id: UUID | None,
        action: AuditAction,
        payload: dict[str, Any],
        target_id: UUID | None = None,
        company_id: UUID | None = None,
    ) -> None: ...


class SessionAuditSink:
    """Adds audit rows to the caller's session so they commit with the transition."""

    def __init__(self, session: AsyncSession, logs: AuditLogRepository | None = None) -> None:
        self.logs = logs or AuditLogRepository(session)

    def record(
        self,
        actor_id: UUID | None,
        action: AuditAction,
        payload: dict[str, Any],
        target_id: UUID | None = None,
        company_id: UUID | None = None,
    ) -> None:
        self.logs.add(
            action=action.value,
            actor_id=actor_id,
            target_id=target_id,
            target_type="CONVERSATION" if target_id is not None else None,
            company_id=company_id,
            payload=payload,
        )
        logger.info("Audit %s by %s on %s", action.value, actor_id, target_id)
