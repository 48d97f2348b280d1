from uuid import uuid4

import pytest

from supportdesk.domain.enums import UserRole
from supportdesk.infra.realtime.registry import SessionRegistry


def test_user_is_online_until_last_connection_leaves() -> None:
    registry = SessionRegistry()
    user_id = uuid4()
    registry.add_connection(user_id, "c1", role=UserRole.AGENT)
    registry.add_connection(user_id, "c2", role=UserRole.AGENT)

    assert registry.is_online(user_id)
    assert registry.connections_of(user_id) == {"c1", "c2"}

    assert registry.remove_connection(user_id, "c1") is False
    assert registry.is_online(user_id)
    assert registry.remove_connection(user_id, "c2") is True
    assert not registry.is_online(user_id)
    assert registry.connection_count == 0


def test_remove_unknown_connection_is_harmless() -> None:
    registry = SessionRegistry()

    assert registry.remove_connection(uuid4(), "missing") is False


def test_connection_is_in_at_most_one_room() -> None:
    registry = SessionRegistry()
    user_id = uuid4()
    first_room, second_room = uuid4(), uuid4()
    registry.add_connection(user_id, "c1")

    assert registry.set_room("c1", first_room) is None
    assert registry.set_room("c1", second_room) == first_room

    assert registry.room_of("c1") == second_room
    assert registry.room_members(first_room) == set()
    assert registry.room_members(second_room) == {"c1"}


def test_rejoining_same_room_keeps_membership() -> None:
    registry = SessionRegistry()
    room = uuid4()
    registry.add_connection(uuid4(), "c1")
    registry.set_room("c1", room)

    assert registry.set_room("c1", room) is None
    assert registry.room_members(room) == {"c1"}


def test_set_room_requires_known_connection() -> None:
    with pytest.raises(KeyError):
        SessionRegistry().set_room("ghost", uuid4())


def test_typing_requires_room_and_clears_on_leave() -> None:
    registry = SessionRegistry()
    user_id = uuid4()
    room = uuid4()
    registry.add_connection(user_id, "c1")

    assert registry.start_typing("c1") is None

    registry.set_room("c1", room)
    assert registry.start_typing("c1") == room
    assert registry.typing_users(room) == {user_id}

    assert registry.clear_room("c1") == room
    assert not registry.is_typing("c1")
    assert registry.typing_users(room) == set()


def test_stop_typing_reports_only_real_changes() -> None:
    registry = SessionRegistry()
    room = uuid4()
    registry.add_connection(uuid4(), "c1")
    registry.set_room("c1", room)

    assert registry.stop_typing("c1") is None
    registry.start_typing("c1")
    assert registry.stop_typing("c1") == room


def test_remove_connection_drops_room_and_typing_state() -> None:
    registry = SessionRegistry()
    user_id = uuid4()
    room = uuid4()
    registry.add_connection(user_id, "c1", company_id=uuid4())
    registry.set_room("c1", room)
    registry.start_typing("c1")

    registry.remove_connection(user_id, "c1")

    assert registry.session("c1") is None
    assert registry.room_members(room) == set()
    assert registry.typing_users(room) == set()
