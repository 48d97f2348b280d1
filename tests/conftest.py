"""Shared fixtures: an in-memory SQLite database and an in-process bus."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from supportdesk.core.config import Settings
from supportdesk.core.db import create_session_factory
from supportdesk.core.security import IdentityClaims
from supportdesk.domain.enums import UserRole
from supportdesk.infra.db.models import Base, UserAccount
from supportdesk.infra.realtime.bus import InMemoryNotificationBus
from supportdesk.infra.realtime.events import NotificationTopic
from supportdesk.services.queue_service import QueueLocks

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class RecordingBus(InMemoryNotificationBus):
    """In-memory bus that also remembers every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[NotificationTopic, dict[str, Any]]] = []

    async def publish(self, topic: NotificationTopic, payload) -> None:
        self.published.append((topic, dict(payload)))
        await super().publish(topic, payload)

    def topics(self) -> list[NotificationTopic]:
        return [topic for topic, _ in self.published]

    def payloads(self, topic: NotificationTopic) -> list[dict[str, Any]]:
        return [payload for published, payload in self.published if published == topic]


class UnavailableBus(InMemoryNotificationBus):
    async def publish(self, topic: NotificationTopic, payload) -> None:
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
async def file_session_factory(
    tmp_path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed database: every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'supportdesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        queue_minutes_per_position=5,
        join_history_limit=50,
        reply_preview_length=100,
        realtime_operation_timeout_seconds=2.0,
        realtime_send_limit=20,
        realtime_send_window_seconds=10,
    )


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def unavailable_bus() -> UnavailableBus:
    return UnavailableBus()


@pytest.fixture
def queue_locks() -> QueueLocks:
    return QueueLocks()


@pytest.fixture
def company_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_account(session_factory: async_sessionmaker[AsyncSession]):
    async def _make_account(
        display_name: str,
        role: UserRole,
        company_id: UUID | None = None,
    ) -> UserAccount:
        async with session_factory() as session:
            account = UserAccount(display_name=display_name, role=role, company_id=company_id)
            session.add(account)
            await session.commit()
            return account

    return _make_account


@pytest.fixture
def make_identity():
    def _make_identity(
        role: UserRole,
        company_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> IdentityClaims:
        return IdentityClaims(
            user_id=user_id or uuid4(),
            role=role,
            company_id=company_id,
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )

    return _make_identity
