# Command queue: PENDING -> SENT -> ACKNOWLEDGED, with FAILED on publish
# errors and EXPIRED from the periodic sweep.
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import traceback

from .event_manager import EventManager, manifold_channel
from .scheduler import Scheduler, TimerHandle
from ..adapters.base import TransportAdapter
from ..models.commands import Command, CommandAction, CommandStatus
from ..models.targets import ControlTarget, LastCommand, TargetMode, TargetStatus
from ..storage.repositories import Repositories
from ..utils.exceptions import InvalidModeError, TargetNotFoundError
from ..utils.helpers import generate_command_id
from ..utils.logging import get_logger

logger = get_logger(__name__)

EXPIRY_REASON = "Command expired - no acknowledgment received within timeout"
AUTO_OFF_ISSUER = "auto-off"
COMMAND_QOS = 1


def command_topic(channel_key: str) -> str:
    return f"manifolds/{channel_key}/command"


class CommandQueueManager:
    """Creates commands, publishes them once and resolves their lifecycle"""

    def __init__(self, repositories: Repositories, transport: TransportAdapter,
                 event_manager: EventManager, scheduler: Scheduler, ack_timeout: float = 30.0):
        self.repositories = repositories
        self.transport = transport
        self.event_manager = event_manager
        self.scheduler = scheduler
        self.ack_timeout = ack_timeout
        self._auto_off_timers: Dict[str, TimerHandle] = {}

    async def enqueue(self, target_id: str, action: Union[CommandAction, str],
                      duration: Optional[int] = None, issued_by: Optional[str] = None) -> Command:
        """
        Create and publish a command for a manually controlled target.

        Raises TargetNotFoundError or InvalidModeError before anything is
        stored. Transport failures never raise: the returned command is FAILED
        with the transport error in error_message.
        """
        action = CommandAction(action)
        target = await self.repositories.targets.get(target_id)
        if target is None:
            raise TargetNotFoundError(f"Target not found: {target_id}")
        if target.mode == TargetMode.AUTO:
            raise InvalidModeError(target_id, target.mode.value)

        now = self.scheduler.now()
        command = Command(
            command_id=generate_command_id(),
            target_id=target.target_id,
            channel_key=target.channel_key,
            target_index=target.target_index,
            action=action,
            duration=duration or 0,
            issued_at=now,
            issued_by=issued_by,
            expires_at=now + timedelta(seconds=self.ack_timeout),
        )
        await self.repositories.commands.insert(command)
        logger.info(f"Queued {action.value} for {target.label} as {command.command_id}")

        await self.event_manager.publish(manifold_channel(target.channel_key), "valveCommand", {
            "manifoldId": target.channel_key,
            "valveId": target.target_id,
            "valveNumber": target.target_index,
            "action": action.value,
            "duration": command.duration,
            "commandId": command.command_id,
        })

        result = await self.transport.publish(
            command_topic(target.channel_key),
            command.wire_message(int(now.timestamp() * 1000)),
            qos=COMMAND_QOS,
        )

        if result.ok:
            command = await self._transition(command.command_id, CommandStatus.SENT, sent_at=now) or command
            await self._record_commanded_state(target_id, action, duration, issued_by, now)
        else:
            error_message = str(result.error) or type(result.error).__name__
            logger.warning(f"Command {command.command_id} failed: {error_message}")
            command = await self._transition(
                command.command_id, CommandStatus.FAILED, error_message=error_message[:500]
            ) or command
            await self.event_manager.publish(manifold_channel(target.channel_key), "commandFailed", {
                "commandId": command.command_id,
                "valveId": target.target_id,
                "valveNumber": target.target_index,
                "error": command.error_message,
            })

        if action == CommandAction.ON and duration and duration > 0:
            self._schedule_auto_off(target_id, command.command_id, now + timedelta(seconds=duration))

        return command

    async def acknowledge(self, command_id: str, now: Optional[datetime] = None) -> Optional[Command]:
        """Resolve a command from its ack. Unknown or already terminal ids are a no-op."""
        now = now or self.scheduler.now()
        command = await self._transition(command_id, CommandStatus.ACKNOWLEDGED, acknowledged_at=now)
        if command is None:
            logger.debug(f"Ignoring ack for unknown or resolved command {command_id}")
            return None

        logger.info(f"Command {command_id} acknowledged")
        await self.event_manager.publish(manifold_channel(command.channel_key), "commandAcknowledged", {
            "commandId": command.command_id,
            "valveId": command.target_id,
            "valveNumber": command.target_index,
            "action": command.action.value,
            "acknowledgedAt": now.isoformat(),
        })
        return command

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Move every PENDING/SENT command past expires_at to EXPIRED in one pass"""
        now = now or self.scheduler.now()

        def expire(command: Command) -> Optional[Command]:
            if not command.can_transition(CommandStatus.EXPIRED) or now <= command.expires_at:
                return None
            command.status = CommandStatus.EXPIRED
            command.error_message = EXPIRY_REASON
            return command

        expired = await self.repositories.commands.update_many(expire)
        if not expired:
            return 0

        by_channel: Dict[str, List[str]] = defaultdict(list)
        for command in expired:
            by_channel[command.channel_key].append(command.command_id)
        for channel_key, command_ids in by_channel.items():
            try:
                await self.event_manager.publish(manifold_channel(channel_key), "commandsExpired", {
                    "manifoldId": channel_key,
                    "commandIds": command_ids,
                })
            except Exception:
                logger.error(f"Error broadcasting expired commands for {channel_key}: {traceback.format_exc()}")

        logger.info(f"Expired {len(expired)} stale commands")
        return len(expired)

    async def run_expiry_sweep(self) -> None:
        await self.expire_stale(self.scheduler.now())

    async def get(self, command_id: str) -> Optional[Command]:
        return await self.repositories.commands.get(command_id)

    async def history(self, target_id: str, limit: int = 50) -> List[Command]:
        return await self.repositories.commands.history(target_id, limit)

    async def queue_position(self, command: Command) -> int:
        """Number of PENDING commands on the same manifold issued before this one"""
        return await self.repositories.commands.pending_before(command.channel_key, command.issued_at)

    def cancel_timers(self) -> None:
        for handle in self._auto_off_timers.values():
            handle.cancel()
        self._auto_off_timers.clear()

    async def _transition(self, command_id: str, new_status: CommandStatus, **fields: Any) -> Optional[Command]:
        def apply(command: Command) -> Optional[Command]:
            if not command.can_transition(new_status):
                return None
            return command.model_copy(update={"status": new_status, **fields})
        return await self.repositories.commands.update(command_id, apply)

    async def _record_commanded_state(self, target_id: str, action: CommandAction, duration: Optional[int],
                                      issued_by: Optional[str], now: datetime) -> None:
        # currentStatus is the last commanded intent until telemetry says otherwise
        def apply(target: ControlTarget) -> ControlTarget:
            target.current_status = TargetStatus(action.value)
            target.cycle_count += 1
            target.last_command = LastCommand(action=action, timestamp=now, issued_by=issued_by)
            if duration is not None and duration >= 0:
                target.auto_off_duration_sec = duration
            target.updated_at = now
            return target
        await self.repositories.targets.update(target_id, apply)

    def _schedule_auto_off(self, target_id: str, command_id: str, when: datetime) -> None:
        async def auto_off() -> None:
            self._auto_off_timers.pop(command_id, None)
            await self._run_auto_off(target_id)

        self._auto_off_timers[command_id] = self.scheduler.call_at(
            when, auto_off, name=f"auto-off-{target_id}"
        )
        logger.info(f"Auto-off for {target_id} scheduled at {when.isoformat()}")

    async def _run_auto_off(self, target_id: str) -> None:
        target = await self.repositories.targets.get(target_id)
        if target is None:
            return
        if target.mode == TargetMode.AUTO or target.current_status != TargetStatus.ON:
            logger.debug(f"Skipping auto-off for {target.label}: mode {target.mode.value}, "
                         f"status {target.current_status.value}")
            return
        try:
            await self.enqueue(target_id, CommandAction.OFF, issued_by=AUTO_OFF_ISSUER)
        except InvalidModeError:
            logger.info(f"Auto-off for {target.label} skipped, target switched to AUTO")
        except Exception:
            logger.error(f"Error in auto-off timer for {target_id}: {traceback.format_exc()}")
