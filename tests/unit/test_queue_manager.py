import asyncio
from uuid import uuid4

import pytest

from supportdesk.domain.enums import ConversationStatus, SenderKind, UserRole
from supportdesk.infra.db.repositories import ConversationRepository, MessageRepository
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.queue_service import ANONYMOUS_CLIENT_NAME, QueueLocks, QueueManager


@pytest.fixture
def queue(db_session, queue_locks) -> QueueManager:
    return QueueManager(db_session, locks=queue_locks, minutes_per_position=5)


@pytest.mark.asyncio
async def test_enqueue_appends_after_highest_position(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)

    assert await queue.enqueue(company_id) == 1

    await repo.create(company_id=company_id, queue_position=1)
    await repo.create(company_id=company_id, queue_position=4)
    await repo.create(company_id=uuid4(), queue_position=9)

    assert await queue.enqueue(company_id) == 5


@pytest.mark.asyncio
async def test_reorganize_makes_positions_dense(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)
    first = await repo.create(company_id=company_id, queue_position=2)
    second = await repo.create(company_id=company_id, queue_position=5)
    third = await repo.create(company_id=company_id, queue_position=3)
    assigned = await repo.create(
        company_id=company_id,
        queue_position=None,
        status=ConversationStatus.ASSIGNED,
    )

    changes = await queue.reorganize(company_id)

    # third already sits at its dense slot
    assert [c.conversation.id for c in changes] == [first.id, second.id]
    assert (first.queue_position, second.queue_position, third.queue_position) == (1, 2, 3)
    assert assigned.queue_position is None


@pytest.mark.asyncio
async def test_reorganize_is_idempotent(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)
    await repo.create(company_id=company_id, queue_position=3)
    await repo.create(company_id=company_id, queue_position=7)

    assert len(await queue.reorganize(company_id)) == 2
    assert await queue.reorganize(company_id) == []


@pytest.mark.asyncio
async def test_reorganize_leaves_other_companies_alone(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)
    other = await repo.create(company_id=uuid4(), queue_position=4)
    await repo.create(company_id=company_id, queue_position=2)

    await queue.reorganize(company_id)

    assert other.queue_position == 4


def test_estimate_wait_scales_with_position(queue) -> None:
    assert queue.estimate_wait(3) == 15
    assert queue.estimate_wait(0) == 0
    assert queue.estimate_wait(-1) == 0


@pytest.mark.asyncio
async def test_active_queue_names_clients(
    db_session, queue, company_id, make_account
) -> None:
    bruno = await make_account("Bruno Lima", UserRole.CLIENT)
    repo = ConversationRepository(db_session)
    named = await repo.create(company_id=company_id, queue_position=1, client_name="Ana")
    registered = await repo.create(
        company_id=company_id, queue_position=2, client_user_id=bruno.id
    )
    anonymous = await repo.create(company_id=company_id, queue_position=3)
    await MessageRepository(db_session).create(
        conversation_id=named.id,
        sender_kind=SenderKind.CLIENT,
        content_text="preciso de ajuda",
        content_json={"type": "text", "content": "preciso de ajuda"},
    )

    entries = await queue.active_queue(company_id)

    assert [entry.conversation_id for entry in entries] == [
        named.id,
        registered.id,
        anonymous.id,
    ]
    assert [entry.rank for entry in entries] == [1, 2, 3]
    assert [entry.client_name for entry in entries] == [
        "Ana",
        "Bruno Lima",
        ANONYMOUS_CLIENT_NAME,
    ]
    assert entries[0].last_message == "preciso de ajuda"
    assert entries[1].last_message is None


@pytest.mark.asyncio
async def test_active_queue_excludes_assigned_and_closed(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)
    waiting = await repo.create(company_id=company_id, queue_position=1)
    for status in (ConversationStatus.ASSIGNED, ConversationStatus.CLOSED):
        await repo.create(company_id=company_id, queue_position=None, status=status)

    entries = await queue.active_queue(company_id)

    assert [entry.conversation_id for entry in entries] == [waiting.id]


def test_company_locks_are_shared_per_company() -> None:
    locks = QueueLocks()
    first, second = uuid4(), uuid4()

    assert locks.for_company(first) is locks.for_company(first)
    assert locks.for_company(first) is not locks.for_company(second)


@pytest.mark.asyncio
async def test_serialized_rolls_back_on_failure(db_session, queue, company_id) -> None:
    repo = ConversationRepository(db_session)

    with pytest.raises(RuntimeError):
        async with queue.serialized(company_id):
            await repo.create(company_id=company_id, queue_position=1)
            raise RuntimeError("abort")

    assert await queue.enqueue(company_id) == 1
    assert not queue.locks.for_company(company_id).locked()


@pytest.mark.asyncio
async def test_concurrent_starts_get_distinct_dense_positions(
    file_session_factory, queue_locks, settings, company_id
) -> None:
    async def start(name: str):
        async with file_session_factory() as session:
            service = ConversationService(session, locks=queue_locks, settings=settings)
            return await service.start_conversation(company_id, client_name=name)

    results = await asyncio.gather(*(start(name) for name in ("Ana", "Bruno", "Carla", "Davi")))

    assert sorted(result.queue_position for result in results) == [1, 2, 3, 4]
    async with file_session_factory() as session:
        queue = QueueManager(session, locks=queue_locks, minutes_per_position=5)
        async with queue.serialized(company_id):
            assert await queue.reorganize(company_id) == []
        entries = await queue.active_queue(company_id)
    assert [entry.queue_position for entry in entries] == [1, 2, 3, 4]
