from uuid import UUID

from fastapi import APIRouter, Depends, Query

from supportdesk.api.deps import get_identity, get_message_service, raise_for_service_error
from supportdesk.core.security import IdentityClaims
from supportdesk.infra.db.models import Message
from supportdesk.schemas.events import MessageView
from supportdesk.schemas.message import (
    EditMessageRequest,
    MessageStatusRequest,
    ReactionRequest,
)
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.errors import (
    ActorForbiddenError,
    ConversationNotFoundError,
    MessageNotFoundError,
)
from supportdesk.services.message_service import MessageIngressService

router = APIRouter()


async def _authorize_message(
    service: MessageIngressService, identity: IdentityClaims, message_id: UUID
) -> None:
    message = await service.messages.get_by_id(message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    conversation = await service.conversations.get_by_id(message.conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(message.conversation_id)
    ConversationService.authorize_participant(identity, conversation)


async def _to_view(service: MessageIngressService, message: Message) -> MessageView:
    conversation = await service.conversations.get_by_id(message.conversation_id)
    views = await service.to_views(conversation, [message])
    return views[0]


@router.patch("/{message_id}", response_model=MessageView)
async def edit_message(
    message_id: UUID,
    payload: EditMessageRequest,
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    try:
        message = await service.edit_message(message_id, payload.content, identity.user_id)
    except (MessageNotFoundError, PermissionError, ValueError) as exc:
        raise_for_service_error(exc)
    return await _to_view(service, message)


@router.delete("/{message_id}", response_model=MessageView)
async def delete_message(
    message_id: UUID,
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    try:
        message = await service.delete_message(message_id, identity.user_id)
    except (MessageNotFoundError, PermissionError, ValueError) as exc:
        raise_for_service_error(exc)
    return await _to_view(service, message)


@router.post("/{message_id}/reactions", response_model=MessageView)
async def add_reaction(
    message_id: UUID,
    payload: ReactionRequest,
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    try:
        await _authorize_message(service, identity, message_id)
        message = await service.add_reaction(message_id, payload.symbol, identity.user_id)
    except (
        MessageNotFoundError,
        ConversationNotFoundError,
        ActorForbiddenError,
        ValueError,
    ) as exc:
        raise_for_service_error(exc)
    return await _to_view(service, message)


@router.delete("/{message_id}/reactions", response_model=MessageView)
async def remove_reaction(
    message_id: UUID,
    symbol: str = Query(min_length=1, max_length=32),
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    try:
        await _authorize_message(service, identity, message_id)
        message = await service.remove_reaction(message_id, symbol, identity.user_id)
    except (
        MessageNotFoundError,
        ConversationNotFoundError,
        ActorForbiddenError,
        ValueError,
    ) as exc:
        raise_for_service_error(exc)
    return await _to_view(service, message)


@router.post("/{message_id}/status", response_model=MessageView)
async def update_message_status(
    message_id: UUID,
    payload: MessageStatusRequest,
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    try:
        await _authorize_message(service, identity, message_id)
        message = await service.update_message_status(
            message_id, payload.status, user_id=identity.user_id
        )
    except (
        MessageNotFoundError,
        ConversationNotFoundError,
        ActorForbiddenError,
        ValueError,
    ) as exc:
        raise_for_service_error(exc)
    return await _to_view(service, message)
