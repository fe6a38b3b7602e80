from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ...utils.logging import get_logger

logger = get_logger(__name__)

realtime_router = APIRouter()


@realtime_router.websocket("/ws/{channel}")
async def channel_socket(websocket: WebSocket, channel: str):
    """Join one broadcast channel: manifold-{key}, ttn-{application} or devices"""
    manager = websocket.app.state.ws_manager
    await manager.connect(channel, websocket)
    try:
        while True:
            # clients only listen; incoming frames keep the session alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(channel, websocket)
