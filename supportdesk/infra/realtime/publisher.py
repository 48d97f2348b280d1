from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from supportdesk.infra.realtime.events import NotificationTopic

NotificationHandler = Callable[[dict[str, Any]], Awaitable[None]]


class NotificationBus(Protocol):
    async def publish(self, topic: NotificationTopic, payload: Mapping[str, Any]) -> None: ...

    def subscribe(self, topic: NotificationTopic, handler: NotificationHandler) -> None: ...


class NoopNotificationBus:
    async def publish(self, topic: NotificationTopic, payload: Mapping[str, Any]) -> None:
        _ = topic
        _ = payload
        return None

    def subscribe(self, topic: NotificationTopic, handler: NotificationHandler) -> None:
        _ = topic
        _ = handler
        return None
