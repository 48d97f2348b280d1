"""Payload shapes carried on the notification bus.

Publishers dump these with ``model_dump(mode="json")`` so the same payload
travels through the in-memory bus and Redis alike; subscribers validate back
into the model.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from supportdesk.domain.enums import MessageStatus, SenderKind
from supportdesk.infra.db.models import Conversation, Message, UserAccount


class MessageView(BaseModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID | None
    sender_name: str
    sender_kind: SenderKind
    content: str
    content_type: str
    timestamp: datetime
    metadata: dict[str, Any] | None = None
    content_json: dict[str, Any]

    @classmethod
    def from_message(cls, message: Message, sender_name: str) -> "MessageView":
        content_json = dict(message.content_json or {})
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sender_name=sender_name,
            sender_kind=message.sender_kind,
            content=message.content_text,
            content_type=str(content_json.get("type", "text")),
            timestamp=message.created_at,
            metadata=content_json.get("metadata"),
            content_json=content_json,
        )


class MessageCreated(BaseModel):
    conversation_id: UUID
    company_id: UUID
    message: MessageView


class MessageUpdated(BaseModel):
    conversation_id: UUID
    change: str
    message: MessageView


class MessageStatusUpdated(BaseModel):
    conversation_id: UUID
    message_id: UUID
    status: MessageStatus
    user_id: UUID | None = None


class ConversationAssigned(BaseModel):
    conversation_id: UUID
    company_id: UUID
    agent_id: UUID
    agent_name: str
    previous_agent_id: UUID | None = None


class ConversationClosed(BaseModel):
    conversation_id: UUID
    company_id: UUID
    closed_at: datetime
    closed_by: UUID | None = None


class ConversationReopened(BaseModel):
    conversation_id: UUID
    company_id: UUID
    queue_position: int


class QueueUpdated(BaseModel):
    conversation_id: UUID
    company_id: UUID
    position: int
    estimated_wait: int


def sender_display_name(
    sender_kind: SenderKind,
    sender: UserAccount | None,
    conversation: Conversation | None = None,
) -> str:
    if sender is not None:
        return sender.display_name
    if sender_kind == SenderKind.SYSTEM:
        return "System"
    if sender_kind == SenderKind.AGENT:
        return "Agent"
    if conversation is not None and conversation.client_name:
        return conversation.client_name
    return "Client"
