from uuid import UUID

from supportdesk.infra.realtime.events import NotificationTopic


def conversation_channel(conversation_id: UUID) -> str:
    return f"conversation:{conversation_id}"


def bus_channel(prefix: str, topic: NotificationTopic) -> str:
    return f"{prefix}:{topic.value}"


def topic_from_bus_channel(prefix: str, channel: str) -> NotificationTopic | None:
    head = f"{prefix}:"
    if not channel.startswith(head):
        return None
    try:
        return NotificationTopic(channel[len(head):])
    except ValueError:
        return None
