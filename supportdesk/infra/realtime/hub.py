import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from starlette.websockets import WebSocketDisconnect

from supportdesk.infra.realtime.events import RealtimeEvent

logger = logging.getLogger(__name__)


class RealtimeSocket(Protocol):
    async def accept(self) -> None: ...

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


def build_envelope(
    event: RealtimeEvent,
    payload: Any,
    channel: str | None = None,
    ack: Any = None,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event": event.value,
        "payload": dict(payload) if isinstance(payload, Mapping) else payload,
        "sent_at": datetime.now(UTC).isoformat(),
    }
    if channel is not None:
        envelope["channel"] = channel
    if ack is not None:
        envelope["ack"] = ack
    return envelope


class ConnectionHub:
    """In-process socket table for websocket fanout."""

    def __init__(self) -> None:
        self._sockets: dict[str, RealtimeSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection_id: str, websocket: RealtimeSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets[connection_id] = websocket

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._sockets.pop(connection_id, None)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    async def send(
        self,
        connection_id: str,
        event: RealtimeEvent,
        payload: Any,
        channel: str | None = None,
        ack: Any = None,
    ) -> bool:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(build_envelope(event, payload, channel, ack))
        except (RuntimeError, OSError, WebSocketDisconnect):
            await self.disconnect(connection_id)
            return False
        return True

    async def broadcast(
        self,
        connection_ids: Iterable[str],
        event: RealtimeEvent,
        payload: Mapping[str, Any],
        channel: str | None = None,
        exclude: str | None = None,
    ) -> list[str]:
        """Send one event to many connections. Returns the ids that went stale."""
        async with self._lock:
            recipients = [
                (connection_id, self._sockets[connection_id])
                for connection_id in dict.fromkeys(connection_ids)
                if connection_id != exclude and connection_id in self._sockets
            ]
        if not recipients:
            return []

        envelope = build_envelope(event, payload, channel)
        stale: list[str] = []
        for connection_id, websocket in recipients:
            try:
                await websocket.send_json(envelope)
            except (RuntimeError, OSError, WebSocketDisconnect):
                stale.append(connection_id)

        if stale:
            async with self._lock:
                for connection_id in stale:
                    self._sockets.pop(connection_id, None)
            logger.debug("Dropped %d stale sockets during %s fanout", len(stale), event.value)
        return stale
