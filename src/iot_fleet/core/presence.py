# Liveness inferred from inbound traffic, aged out by a periodic sweep.
from datetime import datetime
import traceback
from typing import List, Optional

from .event_manager import DEVICES_CHANNEL, EventManager, manifold_channel, application_channel
from .scheduler import Scheduler
from ..models.device import DeviceState
from ..models.lorawan import LoRaWANDevice
from ..models.presence import DevicePresence, PresenceTransition
from ..storage.repositories import Repositories
from ..utils.logging import get_logger

logger = get_logger(__name__)


class PresenceTracker:
    """
    Tracks DevicePresence per device key.

    Keys are namespaced by domain: devices/{id}, manifolds/{id} and
    lorawan/{application}/{device}. Every transition is emitted exactly once
    as presenceChanged on the devices channel, plus a domain specific event.
    """

    def __init__(self, repositories: Repositories, event_manager: EventManager,
                 scheduler: Scheduler, timeout: float = 15.0):
        self.repositories = repositories
        self.event_manager = event_manager
        self.scheduler = scheduler
        self.timeout = timeout

    async def touch(self, device_key: str, now: Optional[datetime] = None) -> Optional[PresenceTransition]:
        """Record traffic from device_key; returns the online transition if there was one"""
        now = now or self.scheduler.now()
        transitions: List[PresenceTransition] = []

        def mark_seen(presence: Optional[DevicePresence]) -> DevicePresence:
            if presence is None:
                presence = DevicePresence(device_key=device_key, last_seen=now)
            # late deliveries never move last_seen backwards
            presence.last_seen = max(presence.last_seen, now)
            if presence.connected_since is None:
                presence.connected_since = now
            if not presence.is_online:
                presence.is_online = True
                transitions.append(PresenceTransition(
                    device_key=device_key, is_online=True, timestamp=now, last_seen=presence.last_seen
                ))
            return presence

        await self.repositories.presence.upsert(device_key, mark_seen)
        return await self._emit_first(transitions)

    async def set_online_flag(self, device_key: str, is_online: bool,
                              now: Optional[datetime] = None) -> Optional[PresenceTransition]:
        """
        Apply an explicit online/offline message (e.g. a last will).

        The message is itself traffic from the key, so presence is touched and
        only the sweep can take it offline. The reported flag is mirrored onto
        the owning entity and broadcast.
        """
        now = now or self.scheduler.now()
        transition = await self.touch(device_key, now)
        await self._mirror(device_key, is_online, now)
        return transition

    async def sweep(self, now: Optional[datetime] = None) -> List[PresenceTransition]:
        """Flip every online key silent for longer than the timeout offline"""
        now = now or self.scheduler.now()
        transitions: List[PresenceTransition] = []

        def age_out(presence: DevicePresence) -> Optional[DevicePresence]:
            if not presence.is_online:
                return None
            if (now - presence.last_seen).total_seconds() <= self.timeout:
                return None
            presence.is_online = False
            transitions.append(PresenceTransition(
                device_key=presence.device_key, is_online=False, timestamp=now, last_seen=presence.last_seen
            ))
            return presence

        await self.repositories.presence.update_many(age_out)
        # flips are already committed, so each broadcast is guarded on its own
        for transition in transitions:
            logger.info(f"{transition.device_key} offline, last seen {transition.last_seen.isoformat()}")
            try:
                await self._apply(transition)
            except Exception:
                logger.error(f"Error applying offline transition for {transition.device_key}: "
                             f"{traceback.format_exc()}")
        return transitions

    async def run_sweep(self) -> None:
        await self.sweep(self.scheduler.now())

    async def clear_connected_since(self, device_key: str) -> Optional[DevicePresence]:
        def clear(presence: DevicePresence) -> Optional[DevicePresence]:
            if presence.connected_since is None:
                return None
            presence.connected_since = None
            return presence
        return await self.repositories.presence.update(device_key, clear)

    async def get(self, device_key: str) -> Optional[DevicePresence]:
        return await self.repositories.presence.get(device_key)

    async def list(self, is_online: Optional[bool] = None) -> List[DevicePresence]:
        items = await self.repositories.presence.find(
            lambda p: is_online is None or p.is_online == is_online
        )
        return sorted(items, key=lambda p: p.device_key)

    async def _emit_first(self, transitions: List[PresenceTransition]) -> Optional[PresenceTransition]:
        if not transitions:
            return None
        transition = transitions[0]
        logger.info(f"{transition.device_key} {'online' if transition.is_online else 'offline'}")
        await self._apply(transition)
        return transition

    async def _apply(self, transition: PresenceTransition) -> None:
        """Mirror a transition onto the owning entity and broadcast it"""
        await self.event_manager.publish(DEVICES_CHANNEL, "presenceChanged", {
            "deviceKey": transition.device_key,
            "isOnline": transition.is_online,
            "lastSeen": transition.last_seen.isoformat(),
        })
        await self._mirror(transition.device_key, transition.is_online, transition.last_seen)

    async def _mirror(self, device_key: str, is_online: bool, last_seen: datetime) -> None:
        """Copy an online state onto the owning entity and emit its domain event"""
        domain, _, key = device_key.partition("/")
        status = "online" if is_online else "offline"

        if domain == "devices":
            def set_status(device: DeviceState) -> DeviceState:
                device.status = status
                device.last_seen = last_seen
                return device
            await self.repositories.devices.update(key, set_status)
            await self.event_manager.publish(DEVICES_CHANNEL, "deviceStatus", {
                "deviceId": key,
                "status": status,
                "lastSeen": last_seen.isoformat(),
            })

        elif domain == "manifolds":
            await self.event_manager.publish(manifold_channel(key), "manifoldOnline", {
                "manifoldId": key,
                "online": is_online,
                "lastSeen": last_seen.isoformat(),
            })

        elif domain == "lorawan":
            application_id, _, device_id = key.partition("/")

            def set_online(device: LoRaWANDevice) -> LoRaWANDevice:
                device.is_online = is_online
                device.last_seen = last_seen
                return device
            await self.repositories.lorawan_devices.update(key, set_online)
            await self.event_manager.publish(application_channel(application_id), "presenceChanged", {
                "applicationId": application_id,
                "deviceId": device_id,
                "isOnline": is_online,
                "lastSeen": last_seen.isoformat(),
            })
