from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from supportdesk.api.deps import (
    get_conversation_service,
    get_identity,
    get_message_service,
    get_optional_identity,
    get_staff_identity,
    raise_for_service_error,
)
from supportdesk.core.security import IdentityClaims
from supportdesk.domain.enums import SenderKind
from supportdesk.domain.exceptions import InvalidConversationTransition
from supportdesk.schemas.conversation import (
    ActiveQueueResponse,
    ConversationResponse,
    QueueEntryResponse,
    QueueStatusResponse,
    StartConversationRequest,
    StartConversationResponse,
    UpdateQueueRequest,
)
from supportdesk.schemas.events import MessageView, sender_display_name
from supportdesk.schemas.message import MessageListResponse, SendMessageRequest
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.errors import (
    ActorForbiddenError,
    ConversationClosedError,
    ConversationNotFoundError,
)
from supportdesk.services.message_service import MessageIngressService

router = APIRouter()


@router.post(
    "/start",
    response_model=StartConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_conversation(
    payload: StartConversationRequest,
    company_id: UUID | None = Header(default=None, alias="X-Company-Id"),
    service: ConversationService = Depends(get_conversation_service),
    identity: IdentityClaims | None = Depends(get_optional_identity),
) -> StartConversationResponse:
    if company_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Company-Id header is required",
        )

    client_user_id = payload.client_user_id
    if identity is not None and not identity.is_staff:
        client_user_id = identity.user_id

    result = await service.start_conversation(
        company_id=company_id,
        client_user_id=client_user_id,
        client_name=payload.client_name,
        client_email=payload.client_email,
        initial_message=payload.initial_message,
        metadata=payload.metadata,
    )
    return StartConversationResponse(
        conversation_id=result.conversation.id,
        queue_position=result.queue_position,
        status=result.status,
        estimated_wait_minutes=result.estimated_wait_minutes,
    )


@router.get("/{conversation_id}/queue-status", response_model=QueueStatusResponse)
async def get_queue_status(
    conversation_id: UUID,
    service: ConversationService = Depends(get_conversation_service),
) -> QueueStatusResponse:
    try:
        result = await service.get_queue_status(conversation_id)
    except ConversationNotFoundError as exc:
        raise_for_service_error(exc)
    return QueueStatusResponse.model_validate(result)


@router.put("/{conversation_id}/queue", response_model=ConversationResponse)
async def update_queue(
    conversation_id: UUID,
    payload: UpdateQueueRequest,
    service: ConversationService = Depends(get_conversation_service),
    actor: IdentityClaims = Depends(get_staff_identity),
) -> ConversationResponse:
    try:
        conversation = await service.update_queue(
            conversation_id,
            actor=actor,
            status=payload.status,
            agent_user_id=payload.agent_user_id,
        )
    except (
        ConversationNotFoundError,
        ActorForbiddenError,
        InvalidConversationTransition,
    ) as exc:
        raise_for_service_error(exc)
    return ConversationResponse.model_validate(conversation)


@router.get("/company/{company_id}/queue", response_model=ActiveQueueResponse)
async def get_active_queue(
    company_id: UUID,
    service: ConversationService = Depends(get_conversation_service),
    actor: IdentityClaims = Depends(get_staff_identity),
) -> ActiveQueueResponse:
    try:
        entries = await service.active_queue(company_id, actor)
    except ActorForbiddenError as exc:
        raise_for_service_error(exc)
    return ActiveQueueResponse(
        company_id=company_id,
        items=[QueueEntryResponse.model_validate(entry) for entry in entries],
    )


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    include_deleted: bool = Query(default=False),
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageListResponse:
    try:
        conversation = await service.conversation_service.get_conversation(conversation_id)
        ConversationService.authorize_participant(identity, conversation)
        messages = await service.get_conversation_messages(
            conversation_id,
            limit=limit,
            offset=offset,
            include_deleted=include_deleted,
        )
    except (ConversationNotFoundError, ActorForbiddenError) as exc:
        raise_for_service_error(exc)
    return MessageListResponse(
        conversation_id=conversation_id,
        items=await service.to_views(conversation, messages),
    )


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageView,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: UUID,
    payload: SendMessageRequest,
    service: MessageIngressService = Depends(get_message_service),
    identity: IdentityClaims = Depends(get_identity),
) -> MessageView:
    sender_kind = SenderKind.AGENT if identity.is_staff else SenderKind.CLIENT
    try:
        conversation = await service.conversation_service.get_conversation(conversation_id)
        ConversationService.authorize_participant(identity, conversation)
        saved = await service.save_message(
            conversation_id=conversation_id,
            sender_id=identity.user_id,
            sender_kind=sender_kind,
            content=payload.content,
            message_type=payload.content_type,
            metadata=payload.metadata,
            reply_to_id=payload.reply_to_id,
            mentions=payload.mentions,
        )
    except (
        ConversationNotFoundError,
        ConversationClosedError,
        ActorForbiddenError,
        ValueError,
    ) as exc:
        raise_for_service_error(exc)

    sender = await service.users.get_by_id(identity.user_id)
    return MessageView.from_message(
        saved.message,
        sender_display_name(sender_kind, sender, saved.conversation),
    )
