from enum import Enum


class NotificationTopic(str, Enum):
    """Topics published on the notification bus after a commit."""

    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_STATUS_UPDATED = "message.status.updated"
    CONVERSATION_ASSIGNED = "conversation.assigned"
    CONVERSATION_CLOSED = "conversation.closed"
    CONVERSATION_REOPENED = "conversation.reopened"
    QUEUE_UPDATED = "queue.updated"


class ClientCommand(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    SEND_MESSAGE = "sendMessage"
    MARK_AS_READ = "markAsRead"
    START_TYPING = "startTyping"
    STOP_TYPING = "stopTyping"
    GET_QUEUE_POSITION = "getQueuePosition"
    PING = "ping"


class RealtimeEvent(str, Enum):
    """Events pushed to websocket clients."""

    MESSAGE = "message"
    MESSAGE_UPDATED = "messageUpdated"
    MESSAGE_DELIVERED = "messageDelivered"
    MESSAGE_READ = "messageRead"
    CONVERSATION_ASSIGNED = "conversationAssigned"
    CONVERSATION_CLOSED = "conversationClosed"
    CONVERSATION_REOPENED = "conversationReopened"
    QUEUE_UPDATE = "queueUpdate"
    TYPING = "typing"
    USER_JOINED = "userJoined"
    USER_LEFT = "userLeft"
    ERROR = "error"
    ACK = "ack"
    CONNECTED = "system.connected"
    PONG = "system.pong"


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONVERSATION_CLOSED = "CONVERSATION_CLOSED"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    UNSUPPORTED_EVENT = "UNSUPPORTED_EVENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
