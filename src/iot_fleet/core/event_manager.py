# Real-time event fan-out to UI sessions, one logical channel per manifold,
# per LoRaWAN application, plus the shared "devices" channel.
import asyncio
import traceback
from typing import Any, Awaitable, Callable, Dict, List

from ..utils.helpers import utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)

ALL_CHANNELS = "*"
DEVICES_CHANNEL = "devices"

EventCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


def manifold_channel(manifold_key: str) -> str:
    return f"manifold-{manifold_key}"


def application_channel(application_id: str) -> str:
    return f"ttn-{application_id}"


class EventManager:
    def __init__(self, max_queue_size: int = 10000):
        # channel -> callbacks
        self.subscribers: Dict[str, List[EventCallback]] = {}
        self.event_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)

    async def publish(self, channel: str, event_type: str, data: Dict[str, Any]) -> None:
        event = dict(data)
        event.setdefault("timestamp", utcnow().isoformat())
        try:
            self.event_queue.put_nowait((channel, event_type, event))
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {event_type} for {channel}")

    async def subscribe(self, channel: str, callback: EventCallback) -> None:
        if channel not in self.subscribers:
            self.subscribers[channel] = []
        self.subscribers[channel].append(callback)

    async def unsubscribe(self, channel: str, callback: EventCallback) -> None:
        callbacks = self.subscribers.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self.subscribers.pop(channel, None)

    async def dispatch(self, channel: str, event_type: str, data: Dict[str, Any]) -> None:
        callbacks = self.subscribers.get(channel, []) + self.subscribers.get(ALL_CHANNELS, [])
        for callback in list(callbacks):
            try:
                await callback(channel, event_type, data)
            except Exception:
                logger.error(f"Subscriber failed for {event_type} on {channel}: {traceback.format_exc()}")

    async def drain(self) -> None:
        """Deliver everything queued so far. Used on shutdown and in tests."""
        while not self.event_queue.empty():
            channel, event_type, data = self.event_queue.get_nowait()
            await self.dispatch(channel, event_type, data)
            self.event_queue.task_done()

    async def process_events(self) -> None:
        while True:
            channel, event_type, data = await self.event_queue.get()
            await self.dispatch(channel, event_type, data)
            self.event_queue.task_done()
