from typing import Any, Dict, List

from ..core.alarms import AlarmEvaluator
from ..core.commands import CommandQueueManager
from ..core.event_manager import EventManager, manifold_channel
from ..core.presence import PresenceTracker
from ..models.presence import presence_key
from ..models.targets import ControlTarget, TargetStatus
from ..storage.repositories import Repositories
from ..utils.exceptions import ParseError
from ..utils.helpers import decode_json_payload, parse_online_flag
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ManifoldMessageHandlers:
    """manifolds/{id}/status, manifolds/{id}/online and manifolds/{id}/ack"""

    def __init__(self, presence: PresenceTracker, commands: CommandQueueManager, alarms: AlarmEvaluator,
                 repositories: Repositories, event_manager: EventManager):
        self.presence = presence
        self.commands = commands
        self.alarms = alarms
        self.repositories = repositories
        self.event_manager = event_manager

    async def status_handler(self, topic: str, manifold_id: str, payload: bytes) -> None:
        """
        Expected payload:
        {"valves": [{"valveNumber": 1, "status": "ON"}, ...], "timestamp": 1736245496789}
        """
        data = decode_json_payload(topic, payload)
        valves = data.get("valves") or []
        if not isinstance(valves, list):
            raise ParseError(topic, "valves must be a list")

        now = self.presence.scheduler.now()

        reported: List[Dict[str, Any]] = []
        for entry in valves:
            if not isinstance(entry, dict) or "valveNumber" not in entry:
                logger.warning(f"Skipping malformed valve entry on {topic}: {entry}")
                continue
            try:
                valve_number = int(entry["valveNumber"])
                status = TargetStatus(str(entry.get("status", "")).upper())
            except (TypeError, ValueError):
                logger.warning(f"Skipping valve entry with bad number or status on {topic}: {entry}")
                continue
            reported.append({"valveNumber": valve_number, "status": status.value})
            await self._apply_valve_status(manifold_id, valve_number, status, now)

        await self.event_manager.publish(manifold_channel(manifold_id), "manifoldStatus", {
            "manifoldId": manifold_id,
            "valves": reported,
            "reportedAt": data.get("timestamp"),
        })

    async def _apply_valve_status(self, manifold_id: str, valve_number: int, status: TargetStatus, now) -> None:
        target = await self.repositories.targets.find_by_index(manifold_id, valve_number)
        if target is None:
            logger.debug(f"Status for unregistered valve {valve_number} on {manifold_id}")
            return

        def observe(current: ControlTarget) -> ControlTarget:
            current.current_status = status
            current.updated_at = now
            return current

        await self.repositories.targets.update(target.target_id, observe)
        await self.alarms.evaluate(target.target_id, status, now)

    async def online_handler(self, topic: str, manifold_id: str, payload: bytes) -> None:
        is_online = parse_online_flag(topic, payload)
        await self.presence.set_online_flag(presence_key("manifolds", manifold_id), is_online)

    async def ack_handler(self, topic: str, manifold_id: str, payload: bytes) -> None:
        """Expected payload: {"commandId": "..."}"""
        data = decode_json_payload(topic, payload)
        command_id = data.get("commandId")
        if not command_id or not isinstance(command_id, str):
            raise ParseError(topic, "ack without commandId")

        command = await self.commands.acknowledge(command_id)
        if command is not None and command.channel_key != manifold_id:
            logger.warning(f"Ack for {command_id} arrived from {manifold_id}, issued to {command.channel_key}")
