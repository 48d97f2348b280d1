from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.core.db import get_db_session

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict[str, str | int]:
    registry = getattr(request.app.state, "session_registry", None)
    return {
        "status": "ok",
        "realtime_connections": registry.connection_count if registry is not None else 0,
    }


@router.get("/health/db")
async def db_health(session: AsyncSession = Depends(get_db_session)):
    await session.execute(text("SELECT 1"))
    return {"db": "ok"}
