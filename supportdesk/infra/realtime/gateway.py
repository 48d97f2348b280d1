"""Websocket command handling and room fanout.

One ``RealtimeGateway`` lives for the lifetime of the application. It owns no
state of its own beyond the injected registry and hub; every command opens a
fresh database session, and every failure is turned into an error ack so the
socket loop keeps running.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportdesk.core.config import Settings, get_settings
from supportdesk.core.rate_limit import InMemoryRateLimiter, RateLimitRule
from supportdesk.core.security import IdentityClaims, TokenAuthenticator
from supportdesk.domain.enums import ConversationStatus, MessageStatus, SenderKind, UserRole
from supportdesk.domain.exceptions import InvalidConversationTransition
from supportdesk.infra.db.models import Conversation
from supportdesk.infra.realtime.channels import conversation_channel
from supportdesk.infra.realtime.events import (
    ClientCommand,
    ErrorCode,
    NotificationTopic,
    RealtimeEvent,
)
from supportdesk.infra.realtime.hub import ConnectionHub, RealtimeSocket
from supportdesk.infra.realtime.publisher import NotificationBus
from supportdesk.infra.realtime.registry import SessionRegistry
from supportdesk.schemas.events import (
    ConversationAssigned,
    ConversationClosed,
    ConversationReopened,
    MessageCreated,
    MessageStatusUpdated,
    MessageUpdated,
    QueueUpdated,
    sender_display_name,
)
from supportdesk.schemas.realtime import (
    ClientFrame,
    MarkAsReadData,
    Participant,
    SendMessageData,
)
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.errors import (
    ConversationClosedError,
    ConversationNotFoundError,
    MessageNotFoundError,
)
from supportdesk.services.message_service import MessageIngressService
from supportdesk.services.queue_service import QueueLocks

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

CommandHandler = Callable[["RealtimeConnection", Any], Awaitable[dict[str, Any]]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IN_ROOM = "in_room"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class RealtimeConnection:
    id: str
    websocket: RealtimeSocket
    state: ConnectionState = ConnectionState.CONNECTING
    identity: IdentityClaims | None = None


class CommandFailed(Exception):
    def __init__(self, code: ErrorCode, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


def _failure(code: ErrorCode, detail: str) -> dict[str, Any]:
    return {"success": False, "error": detail, "code": code.value}


class RealtimeGateway:
    def __init__(
        self,
        registry: SessionRegistry,
        hub: ConnectionHub,
        session_factory: async_sessionmaker[AsyncSession],
        authenticator: TokenAuthenticator,
        bus: NotificationBus,
        settings: Settings | None = None,
        rate_limiter: InMemoryRateLimiter | None = None,
        queue_locks: QueueLocks | None = None,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.session_factory = session_factory
        self.authenticator = authenticator
        self.bus = bus
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self.queue_locks = queue_locks or QueueLocks()
        self.send_rule = RateLimitRule(
            limit=self.settings.realtime_send_limit,
            window_seconds=self.settings.realtime_send_window_seconds,
        )
        self._commands: dict[str, CommandHandler] = {
            ClientCommand.JOIN.value: self._join,
            ClientCommand.LEAVE.value: self._leave,
            ClientCommand.SEND_MESSAGE.value: self._send_message,
            ClientCommand.MARK_AS_READ.value: self._mark_as_read,
            ClientCommand.START_TYPING.value: partial(self._typing, is_typing=True),
            ClientCommand.STOP_TYPING.value: partial(self._typing, is_typing=False),
            ClientCommand.GET_QUEUE_POSITION.value: self._get_queue_position,
        }

    def bind(self) -> None:
        self.bus.subscribe(NotificationTopic.MESSAGE_CREATED, self._on_message_created)
        self.bus.subscribe(NotificationTopic.MESSAGE_STATUS_UPDATED, self._on_message_status)
        relays: list[tuple[NotificationTopic, type[BaseModel], RealtimeEvent]] = [
            (NotificationTopic.MESSAGE_UPDATED, MessageUpdated, RealtimeEvent.MESSAGE_UPDATED),
            (
                NotificationTopic.CONVERSATION_ASSIGNED,
                ConversationAssigned,
                RealtimeEvent.CONVERSATION_ASSIGNED,
            ),
            (
                NotificationTopic.CONVERSATION_CLOSED,
                ConversationClosed,
                RealtimeEvent.CONVERSATION_CLOSED,
            ),
            (
                NotificationTopic.CONVERSATION_REOPENED,
                ConversationReopened,
                RealtimeEvent.CONVERSATION_REOPENED,
            ),
            (NotificationTopic.QUEUE_UPDATED, QueueUpdated, RealtimeEvent.QUEUE_UPDATE),
        ]
        for topic, model, event in relays:
            self.bus.subscribe(topic, partial(self._relay, model, event))

    async def connect(
        self, websocket: RealtimeSocket, credential: str | None
    ) -> RealtimeConnection | None:
        connection = RealtimeConnection(id=uuid4().hex, websocket=websocket)
        await self.hub.connect(connection.id, websocket)

        try:
            identity = self.authenticator.authenticate(credential)
        except ValueError as exc:
            await self.hub.send(
                connection.id,
                RealtimeEvent.ERROR,
                {"code": ErrorCode.UNAUTHORIZED.value, "message": str(exc)},
            )
            await self.hub.disconnect(connection.id)
            await websocket.close(code=POLICY_VIOLATION, reason="Unauthorized")
            connection.state = ConnectionState.DISCONNECTED
            logger.info("Rejected realtime connection %s: %s", connection.id, exc)
            return None

        connection.identity = identity
        connection.state = ConnectionState.AUTHENTICATED
        self.registry.add_connection(
            identity.user_id,
            connection.id,
            role=identity.role,
            company_id=identity.company_id,
        )
        await self.hub.send(
            connection.id,
            RealtimeEvent.CONNECTED,
            {
                "connection_id": connection.id,
                "user_id": str(identity.user_id),
                "role": identity.role.value,
                "company_id": str(identity.company_id) if identity.company_id else None,
            },
        )
        logger.info(
            "Realtime connection %s opened for %s %s",
            connection.id,
            identity.role.value,
            identity.user_id,
        )
        return connection

    async def handle_frame(self, connection: RealtimeConnection, raw: str) -> None:
        if raw.strip().lower() == "ping":
            await self.hub.send(connection.id, RealtimeEvent.PONG, {})
            return

        try:
            frame = ClientFrame.model_validate_json(raw)
        except ValidationError:
            await self.hub.send(
                connection.id,
                RealtimeEvent.ERROR,
                {
                    "code": ErrorCode.INVALID_MESSAGE.value,
                    "message": "Expected a JSON frame with an 'event' field",
                },
            )
            return

        if frame.event == ClientCommand.PING.value:
            await self.hub.send(connection.id, RealtimeEvent.PONG, {}, ack=frame.ack)
            return

        result = await self.dispatch(connection, frame.event, frame.data)
        if frame.ack is not None:
            await self.hub.send(connection.id, RealtimeEvent.ACK, result, ack=frame.ack)
        elif not result.get("success", False):
            logger.debug("Unacknowledged %s failed: %s", frame.event, result.get("error"))

    async def dispatch(
        self, connection: RealtimeConnection, event: str, data: Any
    ) -> dict[str, Any]:
        handler = self._commands.get(event)
        if handler is None:
            return _failure(ErrorCode.UNSUPPORTED_EVENT, f"Unsupported event '{event}'")

        try:
            return await asyncio.wait_for(
                handler(connection, data),
                timeout=self.settings.realtime_operation_timeout_seconds,
            )
        except CommandFailed as exc:
            return _failure(exc.code, exc.detail)
        except TimeoutError:
            logger.warning("Realtime %s timed out for connection %s", event, connection.id)
            return _failure(ErrorCode.TIMEOUT, f"'{event}' timed out")
        except ValidationError as exc:
            return _failure(ErrorCode.INVALID_MESSAGE, self._validation_detail(exc))
        except ConversationClosedError as exc:
            return _failure(ErrorCode.CONVERSATION_CLOSED, str(exc))
        except InvalidConversationTransition as exc:
            return _failure(ErrorCode.INVALID_TRANSITION, str(exc))
        except ConversationNotFoundError as exc:
            return _failure(ErrorCode.CONVERSATION_NOT_FOUND, str(exc))
        except MessageNotFoundError as exc:
            return _failure(ErrorCode.MESSAGE_NOT_FOUND, str(exc))
        except PermissionError as exc:
            return _failure(ErrorCode.FORBIDDEN, str(exc))
        except ValueError as exc:
            return _failure(ErrorCode.INVALID_MESSAGE, str(exc))
        except Exception:
            logger.exception("Realtime %s failed for connection %s", event, connection.id)
            return _failure(ErrorCode.INTERNAL_ERROR, "Internal server error")

    async def disconnect(self, connection: RealtimeConnection) -> None:
        if connection.state == ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED

        room = self.registry.room_of(connection.id)
        try:
            if room is not None:
                await self._leave_room(connection, room)
        finally:
            identity = connection.identity
            if identity is not None:
                went_offline = self.registry.remove_connection(identity.user_id, connection.id)
                if went_offline:
                    await self.rate_limiter.forget(str(identity.user_id))
            await self.hub.disconnect(connection.id)
            logger.info("Realtime connection %s closed", connection.id)

    async def _join(self, connection: RealtimeConnection, data: Any) -> dict[str, Any]:
        identity = self._require_identity(connection)
        conversation_id = self._conversation_id_from(data)

        async with self.session_factory() as session:
            service = self._message_service(session)
            conversation = await service.conversations.get_by_id(conversation_id)
            if conversation is None:
                await self.hub.send(
                    connection.id,
                    RealtimeEvent.ERROR,
                    {
                        "code": ErrorCode.CONVERSATION_NOT_FOUND.value,
                        "message": "Conversation not found",
                        "conversation_id": str(conversation_id),
                    },
                )
                raise ConversationNotFoundError(conversation_id)
            ConversationService.authorize_participant(identity, conversation)

            history = await service.list_recent(conversation.id)
            messages = await service.to_views(conversation, history)

            previous = self.registry.room_of(connection.id)
            if previous is not None and previous != conversation.id:
                await self._leave_room(connection, previous)
            self.registry.set_room(connection.id, conversation.id)
            connection.state = ConnectionState.IN_ROOM

            participants = await self._participants(service, conversation)

        if previous != conversation.id:
            await self._broadcast_room(
                conversation.id,
                RealtimeEvent.USER_JOINED,
                {
                    "conversation_id": str(conversation.id),
                    "user_id": str(identity.user_id),
                    "role": identity.role.value,
                },
                exclude=connection.id,
            )
        logger.info("Connection %s joined conversation %s", connection.id, conversation.id)
        return {
            "success": True,
            "conversation_id": str(conversation.id),
            "messages": [message.model_dump(mode="json") for message in messages],
            "participants": [
                participant.model_dump(mode="json") for participant in participants
            ],
        }

    async def _leave(self, connection: RealtimeConnection, data: Any) -> dict[str, Any]:
        self._require_identity(connection)
        conversation_id = self._conversation_id_from(data)
        if self.registry.room_of(connection.id) != conversation_id:
            raise CommandFailed(ErrorCode.FORBIDDEN, "Not joined to this conversation")
        await self._leave_room(connection, conversation_id)
        return {"success": True, "conversation_id": str(conversation_id)}

    async def _send_message(self, connection: RealtimeConnection, data: Any) -> dict[str, Any]:
        identity = self._require_identity(connection)
        request = SendMessageData.model_validate(data or {})
        if not request.content.strip():
            raise CommandFailed(ErrorCode.INVALID_MESSAGE, "Message content cannot be empty.")

        room = self.registry.room_of(connection.id)
        conversation_id = request.conversation_id or room
        if room is None or conversation_id != room:
            raise CommandFailed(
                ErrorCode.FORBIDDEN, "Join the conversation before sending messages"
            )

        decision = await self.rate_limiter.allow(str(identity.user_id), self.send_rule)
        if not decision:
            raise CommandFailed(
                ErrorCode.RATE_LIMIT,
                f"Too many messages. Retry in {math.ceil(decision.retry_after_seconds)}s.",
            )

        async with self.session_factory() as session:
            saved = await self._message_service(session).save_message(
                conversation_id=room,
                sender_id=identity.user_id,
                sender_kind=SenderKind.AGENT if identity.is_staff else SenderKind.CLIENT,
                content=request.content,
                message_type=request.content_type,
                metadata=request.metadata,
                reply_to_id=request.reply_to_id,
                mentions=request.mentions,
            )

        if self.registry.stop_typing(connection.id) is not None:
            await self._announce_typing(connection, identity, room, is_typing=False)

        return {
            "success": True,
            "message_id": str(saved.message.id),
            "timestamp": saved.message.created_at.isoformat(),
        }

    async def _typing(
        self, connection: RealtimeConnection, data: Any, is_typing: bool
    ) -> dict[str, Any]:
        identity = self._require_identity(connection)
        room = self.registry.room_of(connection.id)
        if room is None:
            raise CommandFailed(ErrorCode.FORBIDDEN, "Join a conversation first")

        if is_typing:
            self.registry.start_typing(connection.id)
        else:
            self.registry.stop_typing(connection.id)
        await self._announce_typing(connection, identity, room, is_typing=is_typing)
        return {"success": True}

    async def _mark_as_read(self, connection: RealtimeConnection, data: Any) -> dict[str, Any]:
        identity = self._require_identity(connection)
        raw = data if isinstance(data, dict) else {"message_id": data}
        request = MarkAsReadData.model_validate(raw)
        room = self.registry.room_of(connection.id)
        if room is None:
            raise CommandFailed(ErrorCode.FORBIDDEN, "Join a conversation first")

        await self._broadcast_room(
            room,
            RealtimeEvent.MESSAGE_READ,
            {
                "conversation_id": str(room),
                "message_id": str(request.message_id),
                "user_id": str(identity.user_id),
                "read_at": datetime.now(UTC).isoformat(),
            },
            exclude=connection.id,
        )

        try:
            async with self.session_factory() as session:
                await self._message_service(session).update_message_status(
                    request.message_id,
                    MessageStatus.READ,
                    user_id=identity.user_id,
                    conversation_id=room,
                    notify=False,
                )
        except (LookupError, ValueError, SQLAlchemyError):
            logger.warning(
                "Could not store read receipt for message %s", request.message_id, exc_info=True
            )
        return {"success": True, "message_id": str(request.message_id)}

    async def _get_queue_position(
        self, connection: RealtimeConnection, data: Any
    ) -> dict[str, Any]:
        self._require_identity(connection)
        room = self.registry.room_of(connection.id)
        if room is None:
            return {"success": True, "position": -1}

        async with self.session_factory() as session:
            conversation = await self._message_service(session).conversations.get_by_id(room)
        if conversation is None:
            raise ConversationNotFoundError(room)

        position = 0
        if conversation.status == ConversationStatus.WAITING:
            position = conversation.queue_position or 0
        return {
            "success": True,
            "conversation_id": str(room),
            "position": position,
            "estimated_wait": position * self.settings.queue_minutes_per_position,
        }

    async def _leave_room(self, connection: RealtimeConnection, room: UUID) -> None:
        # Registry cleanup happens before any peer fan-out.
        info = self.registry.session(connection.id)
        was_typing = self.registry.stop_typing(connection.id) is not None
        self.registry.clear_room(connection.id)
        if connection.state == ConnectionState.IN_ROOM:
            connection.state = ConnectionState.AUTHENTICATED
        if was_typing and info is not None:
            await self._broadcast_room(
                room,
                RealtimeEvent.TYPING,
                {"conversation_id": str(room), "user_id": str(info.user_id), "is_typing": False},
                exclude=connection.id,
            )
        if info is not None:
            await self._broadcast_room(
                room,
                RealtimeEvent.USER_LEFT,
                {"conversation_id": str(room), "user_id": str(info.user_id)},
            )

    async def _announce_typing(
        self,
        connection: RealtimeConnection,
        identity: IdentityClaims,
        room: UUID,
        is_typing: bool,
    ) -> None:
        await self._broadcast_room(
            room,
            RealtimeEvent.TYPING,
            {
                "conversation_id": str(room),
                "user_id": str(identity.user_id),
                "is_typing": is_typing,
            },
            exclude=connection.id,
        )

    async def _participants(
        self, service: MessageIngressService, conversation: Conversation
    ) -> list[Participant]:
        members: dict[UUID, UserRole] = {}
        for connection_id in self.registry.room_members(conversation.id):
            info = self.registry.session(connection_id)
            if info is not None:
                members.setdefault(info.user_id, info.role)

        accounts = await service.users.get_many(members)
        return [
            Participant(
                user_id=user_id,
                user_name=sender_display_name(
                    SenderKind.CLIENT if role == UserRole.CLIENT else SenderKind.AGENT,
                    accounts.get(user_id),
                    conversation,
                ),
                role=role,
                is_online=self.registry.is_online(user_id),
            )
            for user_id, role in members.items()
        ]

    async def _broadcast_room(
        self,
        conversation_id: UUID,
        event: RealtimeEvent,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        await self.hub.broadcast(
            self.registry.room_members(conversation_id),
            event,
            payload,
            channel=conversation_channel(conversation_id),
            exclude=exclude,
        )

    async def _on_message_created(self, payload: dict[str, Any]) -> None:
        event = MessageCreated.model_validate(payload)
        await self._broadcast_room(
            event.conversation_id,
            RealtimeEvent.MESSAGE,
            event.message.model_dump(mode="json"),
        )

    async def _on_message_status(self, payload: dict[str, Any]) -> None:
        event = MessageStatusUpdated.model_validate(payload)
        if event.status == MessageStatus.READ:
            realtime_event = RealtimeEvent.MESSAGE_READ
        elif event.status == MessageStatus.DELIVERED:
            realtime_event = RealtimeEvent.MESSAGE_DELIVERED
        else:
            return
        await self._broadcast_room(
            event.conversation_id, realtime_event, event.model_dump(mode="json")
        )

    async def _relay(
        self, model: type[BaseModel], event: RealtimeEvent, payload: dict[str, Any]
    ) -> None:
        parsed = model.model_validate(payload)
        await self._broadcast_room(
            parsed.conversation_id, event, parsed.model_dump(mode="json")
        )

    def _message_service(self, session: AsyncSession) -> MessageIngressService:
        return MessageIngressService(
            session,
            bus=self.bus,
            locks=self.queue_locks,
            settings=self.settings,
        )

    @staticmethod
    def _require_identity(connection: RealtimeConnection) -> IdentityClaims:
        if connection.identity is None or connection.state == ConnectionState.DISCONNECTED:
            raise CommandFailed(ErrorCode.UNAUTHORIZED, "Authentication required")
        return connection.identity

    @staticmethod
    def _conversation_id_from(data: Any) -> UUID:
        raw = data.get("conversation_id") if isinstance(data, dict) else data
        if isinstance(raw, UUID):
            return raw
        try:
            return UUID(str(raw))
        except (TypeError, ValueError) as exc:
            raise CommandFailed(
                ErrorCode.INVALID_MESSAGE, "A valid conversation_id is required"
            ) from exc

    @staticmethod
    def _validation_detail(exc: ValidationError) -> str:
        errors = exc.errors()
        if not errors:
            return "Invalid payload"
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
