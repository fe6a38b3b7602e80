from enum import Enum
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from .commands import CommandAction


class TargetMode(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class TargetStatus(str, Enum):
    ON = "ON"
    OFF = "OFF"
    FAULT = "FAULT"


class AlarmSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class AlarmRuleType(str, Enum):
    STATUS = "STATUS"
    THRESHOLD = "THRESHOLD"


class AlarmRule(BaseModel):
    enabled: bool = False
    rule_type: AlarmRuleType = AlarmRuleType.STATUS
    metric: str = "status"
    operator: str = Field("==", pattern=r"^(==|!=|>|>=|<|<=)$")
    threshold: Optional[float] = None
    trigger_status: TargetStatus = TargetStatus.FAULT
    notify: bool = True


class AlarmInstance(BaseModel):
    alarm_id: str
    severity: AlarmSeverity
    message: str
    timestamp: datetime
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None


class LastCommand(BaseModel):
    action: CommandAction
    timestamp: datetime
    issued_by: Optional[str] = None


class ControlTarget(BaseModel):
    """
    A controllable output, i.e. one valve on a manifold.
    The record is created by the CRUD layer; this core reads its mode and
    rule, and writes status, counters and alarms.
    """
    target_id: str
    channel_key: str
    target_index: int
    mode: TargetMode = TargetMode.MANUAL
    current_status: TargetStatus = TargetStatus.OFF
    cycle_count: int = 0
    auto_off_duration_sec: int = 0
    last_command: Optional[LastCommand] = None
    alarm_rule: Optional[AlarmRule] = None
    alarms: List[AlarmInstance] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return f"Valve {self.target_index} ({self.target_id}) on {self.channel_key}"
