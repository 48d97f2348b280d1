from fastapi import APIRouter

from supportdesk.api.v1.routes import chats, health, messages, realtime

api_router = APIRouter()
api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(chats.router, prefix="/v1/chats", tags=["chats"])
api_router.include_router(messages.router, prefix="/v1/messages", tags=["messages"])
api_router.include_router(realtime.router, prefix="/v1/realtime", tags=["realtime"])
