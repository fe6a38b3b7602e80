from typing import Any, Dict

from ..core.event_manager import DEVICES_CHANNEL, EventManager
from ..core.presence import PresenceTracker
from ..models.device import DeviceData, DeviceState
from ..models.presence import presence_key
from ..storage.repositories import Repositories
from ..utils.helpers import decode_json_payload, parse_online_flag
from ..utils.logging import get_logger

logger = get_logger(__name__)


def extract_readings(data: Dict[str, Any]) -> Dict[str, float]:
    """Readings may be nested under "data" or sit at the top level"""
    source = data.get("data") if isinstance(data.get("data"), dict) else data
    readings = {}
    for field in ("temperature", "humidity", "value"):
        raw = source.get(field)
        try:
            readings[field] = float(raw) if raw is not None else 0.0
        except (TypeError, ValueError):
            readings[field] = 0.0
    return readings


class DeviceMessageHandlers:
    """devices/{id}/online and devices/{id}/data"""

    def __init__(self, presence: PresenceTracker, repositories: Repositories, event_manager: EventManager):
        self.presence = presence
        self.repositories = repositories
        self.event_manager = event_manager

    async def online_handler(self, topic: str, device_id: str, payload: bytes) -> None:
        """Expected payload: true or false"""
        is_online = parse_online_flag(topic, payload)
        logger.debug(f"Online flag for device {device_id}: {is_online}")
        await self.presence.set_online_flag(presence_key("devices", device_id), is_online)

    async def data_handler(self, topic: str, device_id: str, payload: bytes) -> None:
        """
        Expected payload: {"data": {"temperature": 21.5, "humidity": 40, "value": 1}}
        or the same fields at the top level.
        """
        data = decode_json_payload(topic, payload)
        readings = extract_readings(data)
        now = self.presence.scheduler.now()
        sample = DeviceData(timestamp=now, **readings)

        def store_reading(device: DeviceState) -> DeviceState:
            device.status = "online"
            device.last_seen = now
            device.last_data = sample
            device.settings.update(readings)
            return device

        updated = await self.repositories.devices.update(device_id, store_reading)
        if updated is None:
            logger.debug(f"Data from unregistered device {device_id}")

        logger.info(f"Data from {device_id}: temp={readings['temperature']}, humidity={readings['humidity']}")
        await self.event_manager.publish(DEVICES_CHANNEL, "deviceData", {
            "deviceId": device_id,
            "data": sample.model_dump(mode="json"),
        })
