from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from supportdesk.domain.enums import MessageType, UserRole


class ClientFrame(BaseModel):
    event: str = Field(min_length=1)
    data: Any = None
    ack: str | int | None = None


class SendMessageData(BaseModel):
    conversation_id: UUID | None = None
    content: str = ""
    content_type: MessageType = MessageType.TEXT
    metadata: dict[str, Any] | None = None
    reply_to_id: UUID | None = None
    mentions: list[str] = Field(default_factory=list)


class MarkAsReadData(BaseModel):
    message_id: UUID
    conversation_id: UUID | None = None


class Participant(BaseModel):
    user_id: UUID
    user_name: str
    role: UserRole
    is_online: bool
