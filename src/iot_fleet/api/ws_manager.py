from collections import defaultdict
from typing import Any, Dict, Set
from fastapi import WebSocket
import asyncio
import json

from ..utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """UI websocket sessions grouped by broadcast channel"""

    def __init__(self) -> None:
        self.active_connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, channel: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections[channel].add(websocket)
        logger.debug(f"Websocket joined {channel}")

    async def disconnect(self, channel: str, websocket: WebSocket):
        async with self._lock:
            connections = self.active_connections.get(channel)
            if connections and websocket in connections:
                connections.remove(websocket)
                if not connections:
                    del self.active_connections[channel]

    async def on_event(self, channel: str, event_type: str, data: Dict[str, Any]):
        """EventManager callback, forwards every event to the sessions of its channel"""
        message = json.dumps({"channel": channel, "event": event_type, "data": data}, default=str)
        tasks = []
        async with self._lock:
            for ws in list(self.active_connections.get(channel, ())):
                tasks.append(self._safe_send(channel, ws, message))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, channel: str, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception:
            await self.disconnect(channel, ws)
