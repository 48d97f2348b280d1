from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

router = APIRouter()


def _credential(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token", "").strip()
    if token:
        return token
    return websocket.headers.get("authorization")


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    gateway = getattr(websocket.app.state, "realtime_gateway", None)
    if gateway is None:
        await websocket.close(code=1011, reason="Realtime gateway not initialized")
        return

    connection = await gateway.connect(websocket, _credential(websocket))
    if connection is None:
        return

    try:
        while True:
            raw_message = await websocket.receive_text()
            await gateway.handle_frame(connection, raw_message)
    except WebSocketDisconnect:
        return
    finally:
        await gateway.disconnect(connection)
