from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.core.config import get_settings
from supportdesk.core.db import get_db_session
from supportdesk.core.security import IdentityClaims, decode_access_token
from supportdesk.domain.exceptions import InvalidConversationTransition
from supportdesk.services.conversation_service import ConversationService
from supportdesk.services.errors import (
    ConversationClosedError,
    ConversationNotFoundError,
    MessageNotFoundError,
)
from supportdesk.services.message_service import MessageIngressService

bearer_scheme = HTTPBearer(auto_error=False)


async def get_conversation_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> ConversationService:
    return ConversationService(
        session=session,
        bus=getattr(request.app.state, "notification_bus", None),
        locks=getattr(request.app.state, "queue_locks", None),
    )


async def get_message_service(
    session: AsyncSession = Depends(get_db_session),
    conversations: ConversationService = Depends(get_conversation_service),
) -> MessageIngressService:
    return MessageIngressService(session=session, conversation_service=conversations)


def _decode(credentials: HTTPAuthorizationCredentials) -> IdentityClaims:
    try:
        return decode_access_token(credentials.credentials, get_settings().auth_secret)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        ) from exc


async def get_optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> IdentityClaims | None:
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    return _decode(credentials)


async def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> IdentityClaims:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization credentials",
        )
    return _decode(credentials)


async def get_staff_identity(identity: IdentityClaims = Depends(get_identity)) -> IdentityClaims:
    if not identity.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Agent or manager role required",
        )
    return identity


def raise_for_service_error(exc: Exception) -> None:
    if isinstance(exc, (ConversationNotFoundError, MessageNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, PermissionError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, (ConversationClosedError, InvalidConversationTransition)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc
