import asyncio
import json
import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from supportdesk.core.config import Settings
from supportdesk.infra.realtime.bus import (
    InMemoryNotificationBus,
    RedisNotificationBus,
    build_notification_bus,
)
from supportdesk.infra.realtime.events import NotificationTopic


class FakePubSub:
    def __init__(self, messages: list[dict] | None = None, error: Exception | None = None) -> None:
        self.messages = messages or []
        self.error = error
        self.patterns: list[str] = []
        self.closed = False

    async def psubscribe(self, pattern: str) -> None:
        self.patterns.append(pattern)

    async def listen(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self, pubsubs: list[FakePubSub] | None = None) -> None:
        self.published: list[tuple[str, str]] = []
        self.pubsubs = list(pubsubs or [])
        self.closed = False

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        return 1

    def pubsub(self) -> FakePubSub:
        return self.pubsubs.pop(0)

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_in_memory_bus_delivers_in_publish_order() -> None:
    bus = InMemoryNotificationBus()
    received: list[int] = []

    async def handler(payload: dict) -> None:
        received.append(payload["n"])

    bus.subscribe(NotificationTopic.MESSAGE_CREATED, handler)
    for n in range(3):
        await bus.publish(NotificationTopic.MESSAGE_CREATED, {"n": n})

    assert received == [0, 1, 2]


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_other_handlers(caplog, monkeypatch) -> None:
    monkeypatch.setattr(logging.getLogger("supportdesk"), "propagate", True)
    bus = InMemoryNotificationBus()
    received: list[dict] = []

    async def broken(payload: dict) -> None:
        raise RuntimeError("boom")

    async def healthy(payload: dict) -> None:
        received.append(payload)

    bus.subscribe(NotificationTopic.QUEUE_UPDATED, broken)
    bus.subscribe(NotificationTopic.QUEUE_UPDATED, healthy)

    with caplog.at_level(logging.ERROR):
        await bus.publish(NotificationTopic.QUEUE_UPDATED, {"company_id": "co1"})

    assert received == [{"company_id": "co1"}]
    assert "Notification handler failed" in caplog.text


@pytest.mark.asyncio
async def test_topics_are_isolated() -> None:
    bus = InMemoryNotificationBus()
    received: list[dict] = []

    async def handler(payload: dict) -> None:
        received.append(payload)

    bus.subscribe(NotificationTopic.CONVERSATION_CLOSED, handler)
    await bus.publish(NotificationTopic.CONVERSATION_REOPENED, {"x": 1})

    assert received == []
    assert bus.handler_count(NotificationTopic.CONVERSATION_CLOSED) == 1


@pytest.mark.asyncio
async def test_redis_bus_publishes_json_on_prefixed_channel() -> None:
    redis = FakeRedis()
    bus = RedisNotificationBus(redis, "desk")

    await bus.publish(NotificationTopic.MESSAGE_CREATED, {"message": {"id": "m1"}})

    channel, data = redis.published[0]
    assert channel == "desk:message.created"
    assert json.loads(data) == {"message": {"id": "m1"}}


@pytest.mark.asyncio
async def test_redis_bus_dispatches_raw_messages_to_local_handlers() -> None:
    bus = RedisNotificationBus(FakeRedis(), "desk")
    received: list[dict] = []

    async def handler(payload: dict) -> None:
        received.append(payload)

    bus.subscribe(NotificationTopic.CONVERSATION_ASSIGNED, handler)

    await bus.handle_raw(b"desk:conversation.assigned", '{"agent_id": "a1"}')
    await bus.handle_raw("other:conversation.assigned", '{"agent_id": "a2"}')
    await bus.handle_raw("desk:unknown.topic", '{"agent_id": "a3"}')
    await bus.handle_raw("desk:conversation.assigned", "not json")
    await bus.handle_raw("desk:conversation.assigned", None)

    assert received == [{"agent_id": "a1"}]


def test_build_notification_bus_follows_backend_setting() -> None:
    assert isinstance(build_notification_bus(Settings()), InMemoryNotificationBus)

    bus = build_notification_bus(
        Settings(notification_backend="redis", notification_channel_prefix="desk")
    )
    assert isinstance(bus, RedisNotificationBus)
    assert bus.channel_prefix == "desk"


@pytest.mark.asyncio
async def test_redis_listener_resubscribes_after_connection_loss() -> None:
    dropped = FakePubSub(error=RedisConnectionError("Connection reset by peer"))
    fresh = FakePubSub(
        [
            {"type": "psubscribe", "channel": "desk:*", "data": 1},
            {"type": "pmessage", "channel": "desk:queue.updated", "data": '{"position": 1}'},
        ]
    )
    redis = FakeRedis([dropped, fresh])
    bus = RedisNotificationBus(redis, "desk", reconnect_delay_seconds=0)
    delivered = asyncio.Event()
    received: list[dict] = []

    async def handler(payload: dict) -> None:
        received.append(payload)
        delivered.set()

    bus.subscribe(NotificationTopic.QUEUE_UPDATED, handler)
    await bus.start()
    await asyncio.wait_for(delivered.wait(), timeout=1)
    await bus.close()

    assert received == [{"position": 1}]
    assert dropped.patterns == fresh.patterns == ["desk:*"]
    assert dropped.closed and fresh.closed
    assert redis.closed


@pytest.mark.asyncio
async def test_redis_listener_crash_is_logged(caplog, monkeypatch) -> None:
    monkeypatch.setattr(logging.getLogger("supportdesk"), "propagate", True)
    redis = FakeRedis([FakePubSub(error=RuntimeError("decoder exploded"))])
    bus = RedisNotificationBus(redis, "desk", reconnect_delay_seconds=0)

    with caplog.at_level(logging.ERROR):
        await bus.start()
        listener = bus._listener
        with pytest.raises(RuntimeError):
            await listener
        await asyncio.sleep(0)

    assert "Redis notification listener stopped" in caplog.text
    await bus.close()
    assert redis.closed
