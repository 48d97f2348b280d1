from enum import Enum


class ConversationStatus(str, Enum):
    WAITING = "waiting"
    OPEN = "open"
    ASSIGNED = "assigned"
    CLOSED = "closed"


class SenderKind(str, Enum):
    CLIENT = "client"
    AGENT = "agent"
    SYSTEM = "system"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    SYSTEM = "system"
    NOTIFICATION = "notification"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class UserRole(str, Enum):
    CLIENT = "client"
    AGENT = "agent"
    MANAGER = "manager"


class TransitionAction(str, Enum):
    ASSIGN = "assign"
    CLOSE = "close"
    REOPEN = "reopen"
    TRANSFER = "transfer"


class AuditAction(str, Enum):
    CONVERSATION_ASSIGN = "conversation.assign"
    CONVERSATION_TRANSFER = "conversation.transfer"
    CONVERSATION_CLOSE = "conversation.close"
    CONVERSATION_REOPEN = "conversation.reopen"


ATTACHMENT_MESSAGE_TYPES = frozenset(
    {MessageType.IMAGE, MessageType.FILE, MessageType.AUDIO, MessageType.VIDEO}
)
QUEUED_STATUSES = (ConversationStatus.WAITING, ConversationStatus.OPEN)
