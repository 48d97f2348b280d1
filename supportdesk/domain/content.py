"""Structured message content stored in ``messages.content_json``.

Each message type has its own payload model. The ``type`` field is the
discriminator, so a payload read back from storage is parsed into the right
variant and checked once at the service boundary instead of at every use
site.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from supportdesk.domain.enums import ATTACHMENT_MESSAGE_TYPES, MessageStatus, MessageType
from supportdesk.domain.exceptions import InvalidMessageContent

DELETED_MESSAGE_TOMBSTONE = "[message deleted]"
ATTACHMENT_FIELDS = ("file_name", "file_size", "mime_type")


class Dimensions(BaseModel):
    width: int
    height: int


class Location(BaseModel):
    latitude: float
    longitude: float
    address: str | None = None


class MessageMetadata(BaseModel):
    file_name: str | None = None
    file_size: str | None = None
    mime_type: str | None = None
    duration: str | None = None
    thumbnail_url: str | None = None
    dimensions: Dimensions | None = None
    transcript: str | None = None
    location: Location | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def has_attachment(self) -> bool:
        return any(getattr(self, field) for field in ATTACHMENT_FIELDS)


class ReplyReference(BaseModel):
    message_id: str
    preview: str


class ActorStamp(BaseModel):
    at: datetime
    by: str


class MessageTimestamps(BaseModel):
    sent: datetime
    delivered: datetime | None = None
    read: datetime | None = None


class _PayloadBase(BaseModel):
    content: str
    metadata: MessageMetadata | None = None
    status: MessageStatus = MessageStatus.SENT
    timestamps: MessageTimestamps
    reactions: dict[str, list[str]] = Field(default_factory=dict)
    mentions: list[str] = Field(default_factory=list)
    reply_to: ReplyReference | None = None
    edited: ActorStamp | None = None
    deleted: ActorStamp | None = None
    version: int = Field(default=1, ge=1)

    @property
    def is_deleted(self) -> bool:
        return self.deleted is not None

    def mark_status(self, status: MessageStatus, at: datetime) -> None:
        self.status = status
        if status == MessageStatus.DELIVERED:
            self.timestamps.delivered = at
        elif status == MessageStatus.READ:
            self.timestamps.read = at

    def edit(self, new_content: str, editor_id: str, at: datetime) -> None:
        self.content = new_content
        self.edited = ActorStamp(at=at, by=editor_id)
        self.version += 1

    def soft_delete(self, deleter_id: str, at: datetime) -> None:
        self.content = DELETED_MESSAGE_TOMBSTONE
        self.metadata = None
        self.deleted = ActorStamp(at=at, by=deleter_id)
        self.version += 1

    def add_reaction(self, symbol: str, user_id: str) -> bool:
        reactors = self.reactions.setdefault(symbol, [])
        if user_id in reactors:
            return False
        reactors.append(user_id)
        return True

    def remove_reaction(self, symbol: str, user_id: str) -> bool:
        reactors = self.reactions.get(symbol)
        if not reactors or user_id not in reactors:
            return False
        reactors.remove(user_id)
        if not reactors:
            self.reactions.pop(symbol, None)
        return True

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class TextPayload(_PayloadBase):
    type: Literal["text"] = "text"

    @model_validator(mode="after")
    def _reject_attachment(self) -> TextPayload:
        if self.metadata is not None and self.metadata.has_attachment:
            raise ValueError("Text messages cannot carry attachment metadata")
        return self


class AttachmentPayload(_PayloadBase):
    type: Literal["image", "file", "audio", "video"]

    @model_validator(mode="after")
    def _require_file(self) -> AttachmentPayload:
        if self.deleted is None and (self.metadata is None or not self.metadata.file_name):
            raise ValueError(f"'{self.type}' messages require metadata.file_name")
        return self


class SystemPayload(_PayloadBase):
    type: Literal["system", "notification"]

    @model_validator(mode="after")
    def _reject_attachment(self) -> SystemPayload:
        if self.metadata is not None and self.metadata.has_attachment:
            raise ValueError("System messages cannot carry attachment metadata")
        return self


MessagePayload = Annotated[
    Union[TextPayload, AttachmentPayload, SystemPayload],
    Field(discriminator="type"),
]
_payload_adapter: TypeAdapter[MessagePayload] = TypeAdapter(MessagePayload)


def parse_payload(raw: dict[str, Any] | None) -> MessagePayload:
    if not raw:
        raise InvalidMessageContent("Message has no structured content")
    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidMessageContent(str(exc)) from exc


def build_payload(
    message_type: MessageType,
    content: str,
    metadata: dict[str, Any] | None = None,
    reply_to: ReplyReference | None = None,
    mentions: list[str] | None = None,
    sent_at: datetime | None = None,
) -> MessagePayload:
    raw: dict[str, Any] = {
        "type": MessageType(message_type).value,
        "content": content,
        "metadata": metadata or None,
        "status": MessageStatus.SENT.value,
        "timestamps": {"sent": sent_at or datetime.now(UTC)},
        "reactions": {},
        "mentions": list(dict.fromkeys(mentions or [])),
        "reply_to": reply_to,
        "version": 1,
    }
    return parse_payload(raw)


def truncate_preview(text: str, limit: int) -> str:
    return text[:limit]


def is_attachment_type(message_type: MessageType) -> bool:
    return message_type in ATTACHMENT_MESSAGE_TYPES
