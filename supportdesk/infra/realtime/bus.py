"""Notification bus implementations.

``InMemoryNotificationBus`` awaits every handler inline, so within one
process a subscriber sees events in commit order before ``publish`` returns.
``RedisNotificationBus`` relays events through Redis pub/sub so gateways on
every instance receive them; local handlers then run from the listener task.
"""

import asyncio
import contextlib
import json
import logging
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from supportdesk.core.config import Settings
from supportdesk.infra.realtime.channels import bus_channel, topic_from_bus_channel
from supportdesk.infra.realtime.events import NotificationTopic
from supportdesk.infra.realtime.publisher import NotificationHandler

logger = logging.getLogger(__name__)


class _HandlerTable:
    def __init__(self) -> None:
        self._handlers: dict[NotificationTopic, list[NotificationHandler]] = defaultdict(list)

    def subscribe(self, topic: NotificationTopic, handler: NotificationHandler) -> None:
        self._handlers[topic].append(handler)

    def handler_count(self, topic: NotificationTopic) -> int:
        return len(self._handlers.get(topic, []))

    async def _dispatch(self, topic: NotificationTopic, payload: Mapping[str, Any]) -> None:
        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(dict(payload))
            except Exception:
                logger.exception("Notification handler failed for topic %s", topic.value)


class InMemoryNotificationBus(_HandlerTable):
    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def publish(self, topic: NotificationTopic, payload: Mapping[str, Any]) -> None:
        await self._dispatch(topic, payload)


class RedisNotificationBus(_HandlerTable):
    def __init__(
        self, redis: Redis, channel_prefix: str, reconnect_delay_seconds: float = 1.0
    ) -> None:
        super().__init__()
        self.redis = redis
        self.channel_prefix = channel_prefix
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task | None = None

    async def start(self) -> None:
        self._pubsub = await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        self._listener.add_done_callback(self._on_listener_done)
        logger.info("Redis notification bus listening on %s:*", self.channel_prefix)

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None and not listener.done():
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        await self._drop_pubsub()
        await self.redis.aclose()

    async def publish(self, topic: NotificationTopic, payload: Mapping[str, Any]) -> None:
        await self.redis.publish(
            bus_channel(self.channel_prefix, topic),
            json.dumps(dict(payload), default=str),
        )

    async def _subscribe(self) -> PubSub:
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(f"{self.channel_prefix}:*")
        return pubsub

    async def _drop_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except RedisError:
            logger.debug("Ignoring error while closing Redis pub/sub", exc_info=True)

    async def _listen(self) -> None:
        while True:
            try:
                if self._pubsub is None:
                    self._pubsub = await self._subscribe()
                    logger.info("Redis notification bus resubscribed on %s:*", self.channel_prefix)
                async for message in self._pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    await self.handle_raw(message.get("channel"), message.get("data"))
            except (RedisError, OSError):
                logger.warning(
                    "Redis notification listener lost its connection; retrying in %.1fs",
                    self.reconnect_delay_seconds,
                    exc_info=True,
                )
            else:
                logger.warning("Redis notification stream ended; resubscribing")
            await self._drop_pubsub()
            await asyncio.sleep(self.reconnect_delay_seconds)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Redis notification listener stopped",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def handle_raw(self, channel: str | bytes | None, data: str | bytes | None) -> None:
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if channel is None or data is None:
            return
        topic = topic_from_bus_channel(self.channel_prefix, channel)
        if topic is None:
            return
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed notification on %s", channel)
            return
        if isinstance(payload, dict):
            await self._dispatch(topic, payload)


def build_notification_bus(settings: Settings) -> InMemoryNotificationBus | RedisNotificationBus:
    if settings.notification_backend == "redis":
        redis = Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisNotificationBus(
            redis,
            settings.notification_channel_prefix,
            reconnect_delay_seconds=settings.notification_reconnect_seconds,
        )
    return InMemoryNotificationBus()
