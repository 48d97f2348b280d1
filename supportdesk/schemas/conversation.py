from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from supportdesk.domain.enums import ConversationStatus


class StartConversationRequest(BaseModel):
    client_user_id: UUID | None = None
    client_name: str | None = Field(default=None, max_length=120)
    client_email: str | None = Field(default=None, max_length=255)
    initial_message: str | None = Field(default=None, max_length=4000)
    metadata: dict[str, Any] | None = None


class StartConversationResponse(BaseModel):
    conversation_id: UUID
    queue_position: int
    status: ConversationStatus
    estimated_wait_minutes: int


class QueueStatusResponse(BaseModel):
    conversation_id: UUID
    status: ConversationStatus
    queue_position: int | None
    agent_id: UUID | None
    agent_name: str | None
    last_message: str | None
    estimated_wait_minutes: int | None

    model_config = ConfigDict(from_attributes=True)


class UpdateQueueRequest(BaseModel):
    status: ConversationStatus | None = None
    agent_user_id: UUID | None = None


class ConversationResponse(BaseModel):
    id: UUID
    company_id: UUID
    status: ConversationStatus
    queue_position: int | None
    agent_user_id: UUID | None
    client_user_id: UUID | None
    client_name: str | None
    started_at: datetime
    closed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class QueueEntryResponse(BaseModel):
    conversation_id: UUID
    position: int = Field(validation_alias="rank")
    queue_position: int | None
    client_name: str
    started_at: datetime
    last_message: str | None
    status: ConversationStatus

    model_config = ConfigDict(from_attributes=True)


class ActiveQueueResponse(BaseModel):
    company_id: UUID
    items: list[QueueEntryResponse]
