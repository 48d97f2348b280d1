"""Per-process bookkeeping of live realtime connections.

Owned by the application lifespan and injected into the gateway. Nothing here
touches the network or the database; state is rebuilt by clients re-joining
after a restart.
"""

from dataclasses import dataclass
from uuid import UUID

from supportdesk.domain.enums import UserRole


@dataclass(slots=True)
class SessionInfo:
    connection_id: str
    user_id: UUID
    role: UserRole
    company_id: UUID | None = None
    room: UUID | None = None


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionInfo] = {}
        self._user_connections: dict[UUID, set[str]] = {}
        self._room_members: dict[UUID, set[str]] = {}
        # conversation id -> {connection id: user id}
        self._typing: dict[UUID, dict[str, UUID]] = {}

    def add_connection(
        self,
        user_id: UUID,
        connection_id: str,
        role: UserRole = UserRole.CLIENT,
        company_id: UUID | None = None,
    ) -> SessionInfo:
        info = SessionInfo(
            connection_id=connection_id,
            user_id=user_id,
            role=role,
            company_id=company_id,
        )
        self._sessions[connection_id] = info
        self._user_connections.setdefault(user_id, set()).add(connection_id)
        return info

    def remove_connection(self, user_id: UUID, connection_id: str) -> bool:
        """Forget a connection. Returns True when it was the user's last one."""
        self.clear_room(connection_id)
        self._sessions.pop(connection_id, None)

        connections = self._user_connections.get(user_id)
        if connections is None:
            return False
        connections.discard(connection_id)
        if connections:
            return False
        self._user_connections.pop(user_id, None)
        return True

    def session(self, connection_id: str) -> SessionInfo | None:
        return self._sessions.get(connection_id)

    def is_online(self, user_id: UUID) -> bool:
        return bool(self._user_connections.get(user_id))

    def connections_of(self, user_id: UUID) -> set[str]:
        return set(self._user_connections.get(user_id, set()))

    def set_room(self, connection_id: str, conversation_id: UUID) -> UUID | None:
        """Move a connection into a room. Returns the room it left, if any."""
        info = self._sessions.get(connection_id)
        if info is None:
            raise KeyError(connection_id)
        previous = None
        if info.room is not None and info.room != conversation_id:
            previous = self.clear_room(connection_id)
        info.room = conversation_id
        self._room_members.setdefault(conversation_id, set()).add(connection_id)
        return previous

    def clear_room(self, connection_id: str) -> UUID | None:
        info = self._sessions.get(connection_id)
        if info is None or info.room is None:
            return None
        room = info.room
        self.stop_typing(connection_id)
        members = self._room_members.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                self._room_members.pop(room, None)
        info.room = None
        return room

    def room_of(self, connection_id: str) -> UUID | None:
        info = self._sessions.get(connection_id)
        return info.room if info is not None else None

    def room_members(self, conversation_id: UUID) -> set[str]:
        return set(self._room_members.get(conversation_id, set()))

    def start_typing(self, connection_id: str) -> UUID | None:
        info = self._sessions.get(connection_id)
        if info is None or info.room is None:
            return None
        self._typing.setdefault(info.room, {})[connection_id] = info.user_id
        return info.room

    def stop_typing(self, connection_id: str) -> UUID | None:
        """Clear typing state. Returns the room when the connection was typing."""
        info = self._sessions.get(connection_id)
        if info is None or info.room is None:
            return None
        typing = self._typing.get(info.room)
        if typing is None or connection_id not in typing:
            return None
        typing.pop(connection_id)
        if not typing:
            self._typing.pop(info.room, None)
        return info.room

    def is_typing(self, connection_id: str) -> bool:
        return any(connection_id in typing for typing in self._typing.values())

    def typing_users(self, conversation_id: UUID) -> set[UUID]:
        return set(self._typing.get(conversation_id, {}).values())

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()
        self._user_connections.clear()
        self._room_members.clear()
        self._typing.clear()
