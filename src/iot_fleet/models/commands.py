from enum import Enum
from datetime import datetime
from typing import Any, Dict, Optional, Set
from pydantic import BaseModel, Field


class CommandAction(str, Enum):
    ON = "ON"
    OFF = "OFF"


class CommandStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


# Allowed forward moves. Terminal states have no way out.
# An ack may overtake the local SENT write, hence PENDING -> ACKNOWLEDGED.
COMMAND_TRANSITIONS: Dict[CommandStatus, Set[CommandStatus]] = {
    CommandStatus.PENDING: {
        CommandStatus.SENT,
        CommandStatus.ACKNOWLEDGED,
        CommandStatus.FAILED,
        CommandStatus.EXPIRED,
    },
    CommandStatus.SENT: {
        CommandStatus.ACKNOWLEDGED,
        CommandStatus.EXPIRED,
    },
    CommandStatus.ACKNOWLEDGED: set(),
    CommandStatus.FAILED: set(),
    CommandStatus.EXPIRED: set(),
}


class Command(BaseModel):
    """One outbound actuator command and its delivery lifecycle."""
    command_id: str
    target_id: str
    channel_key: str
    target_index: int
    action: CommandAction
    duration: int = 0
    status: CommandStatus = CommandStatus.PENDING
    issued_at: datetime
    issued_by: Optional[str] = None
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    expires_at: datetime
    error_message: str = Field("", max_length=500)

    def can_transition(self, new_status: CommandStatus) -> bool:
        return new_status in COMMAND_TRANSITIONS[self.status]

    def wire_message(self, timestamp_ms: int) -> Dict[str, Any]:
        """Payload published on manifolds/{channel_key}/command"""
        return {
            "commandId": self.command_id,
            "valveNumber": self.target_index,
            "action": self.action.value,
            "duration": self.duration,
            "timestamp": timestamp_ms,
        }
