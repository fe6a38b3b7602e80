# Dispatches inbound transport messages to exactly one handler path.
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Union
import traceback

from ..handlers.device_handlers import DeviceMessageHandlers
from ..handlers.lorawan_handlers import DOWNLINK_EVENT_STATUS, LoRaWANMessageHandlers
from ..handlers.manifold_handlers import ManifoldMessageHandlers
from ..models.presence import presence_key
from .presence import PresenceTracker
from ..utils.exceptions import ParseError, UnroutableTopic
from ..utils.helpers import decode_json_payload
from ..utils.logging import get_logger

logger = get_logger(__name__)

TopicHandler = Callable[[str, str, bytes], Awaitable[None]]

# published by this process, an echo is not traffic from the device
OUTBOUND_EVENTS = {"manifolds": {"command"}}


class RouteResult(str, Enum):
    HANDLED = "handled"
    IGNORED = "ignored"


class TelemetryIngestRouter:
    """
    Topic families:
        devices/{id}/{online|data}
        manifolds/{id}/{status|online|ack}
        v3/{application}@{tenant}/devices/{device}/{up|join|down/...}
    Any inbound devices/manifolds message refreshes presence for its key, even
    one that is later ignored or fails to parse. Unknown event types inside a
    known family are ignored.
    """

    def __init__(self, presence: PresenceTracker, device_handlers: DeviceMessageHandlers,
                 manifold_handlers: ManifoldMessageHandlers, lorawan_handlers: LoRaWANMessageHandlers):
        self.presence = presence
        self.lorawan_handlers = lorawan_handlers
        self.routes: Dict[str, Dict[str, TopicHandler]] = {
            "devices": {
                "online": device_handlers.online_handler,
                "data": device_handlers.data_handler,
            },
            "manifolds": {
                "status": manifold_handlers.status_handler,
                "online": manifold_handlers.online_handler,
                "ack": manifold_handlers.ack_handler,
            },
        }

    async def route(self, topic: str, payload: Union[bytes, str]) -> RouteResult:
        """Raises ParseError for malformed payloads and UnroutableTopic for foreign topics"""
        if isinstance(payload, str):
            payload = payload.encode()

        parts = topic.split('/')
        if parts[0] == "v3":
            return await self._route_lorawan_topic(topic, parts, payload)

        if len(parts) != 3 or parts[0] not in self.routes or not parts[1]:
            raise UnroutableTopic(topic)

        prefix, key, event_type = parts
        if event_type not in OUTBOUND_EVENTS.get(prefix, ()):
            await self.presence.touch(presence_key(prefix, key))

        handler = self.routes[prefix].get(event_type)
        if handler is None:
            logger.debug(f"Ignoring {event_type} on {topic}")
            return RouteResult.IGNORED

        await handler(topic, key, payload)
        return RouteResult.HANDLED

    async def _route_lorawan_topic(self, topic: str, parts: list, payload: bytes) -> RouteResult:
        # v3/{application}@{tenant}/devices/{device}/{event...}
        if len(parts) < 5 or parts[2] != "devices" or not parts[1] or not parts[3]:
            raise UnroutableTopic(topic)
        application_id = parts[1].split('@', 1)[0]
        event = '/'.join(parts[4:])
        if not self._lorawan_event_known(event):
            logger.debug(f"Ignoring LoRaWAN event {event} on {topic}")
            return RouteResult.IGNORED
        data = decode_json_payload(topic, payload)
        return await self.route_lorawan(application_id, parts[3], event, data, topic=topic)

    @staticmethod
    def _lorawan_event_known(event: str) -> bool:
        if event in ("up", "join"):
            return True
        kind, _, sub = event.partition('/')
        return kind == "down" and sub in DOWNLINK_EVENT_STATUS

    async def route_lorawan(self, application_id: str, device_id: str, event: str,
                            payload: Dict[str, Any], topic: str = "") -> RouteResult:
        """Entry point shared by the MQTT integration and the HTTP webhook"""
        topic = topic or f"webhook/{application_id}/{device_id}/{event}"
        if event == "up":
            await self.lorawan_handlers.uplink_handler(topic, application_id, device_id, payload)
        elif event == "join":
            await self.lorawan_handlers.join_handler(topic, application_id, device_id, payload)
        elif self._lorawan_event_known(event):
            await self.lorawan_handlers.downlink_handler(
                topic, application_id, device_id, event.partition('/')[2], payload
            )
        else:
            logger.debug(f"Ignoring LoRaWAN event {event} for {application_id}/{device_id}")
            return RouteResult.IGNORED
        return RouteResult.HANDLED

    async def handle_message(self, topic: str, payload: bytes) -> None:
        """Transport callback: never raises, malformed messages are dropped"""
        try:
            result = await self.route(topic, payload)
            logger.debug(f"{topic}: {result.value}")
        except ParseError as e:
            logger.warning(f"Dropping message: {e}")
        except UnroutableTopic as e:
            logger.debug(str(e))
        except Exception:
            logger.error(f"Error processing message on {topic}: {traceback.format_exc()}")
