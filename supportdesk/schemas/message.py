from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from supportdesk.domain.enums import MessageStatus, MessageType
from supportdesk.schemas.events import MessageView


class SendMessageRequest(BaseModel):
    content: str = Field(max_length=4000)
    content_type: MessageType = MessageType.TEXT
    metadata: dict[str, Any] | None = None
    reply_to_id: UUID | None = None
    mentions: list[str] = Field(default_factory=list)


class EditMessageRequest(BaseModel):
    content: str = Field(max_length=4000)


class ReactionRequest(BaseModel):
    symbol: str = Field(min_length=1, max_length=32)


class MessageStatusRequest(BaseModel):
    status: MessageStatus


class MessageListResponse(BaseModel):
    conversation_id: UUID
    items: list[MessageView]
