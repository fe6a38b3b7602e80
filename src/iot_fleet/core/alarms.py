# Alarm rules attached to control targets, evaluated on status telemetry.
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import operator

from .event_manager import EventManager, manifold_channel
from .scheduler import Scheduler
from ..models.targets import (
    AlarmInstance, AlarmRule, AlarmRuleType, AlarmSeverity, ControlTarget, TargetStatus
)
from ..storage.repositories import Repositories
from ..utils.helpers import generate_alarm_id
from ..utils.logging import get_logger

logger = get_logger(__name__)

OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


def rule_matches(rule: AlarmRule, observed_status: Optional[TargetStatus],
                 metrics: Optional[Dict[str, Any]] = None) -> bool:
    """True when the rule is enabled and the observation satisfies it"""
    if not rule.enabled:
        return False

    if rule.rule_type == AlarmRuleType.STATUS:
        if observed_status is None:
            return False
        # only equality makes sense for an enum status
        if rule.operator == "!=":
            return observed_status != rule.trigger_status
        return observed_status == rule.trigger_status

    if rule.threshold is None or not metrics or rule.metric not in metrics:
        return False
    try:
        value = float(metrics[rule.metric])
    except (TypeError, ValueError):
        return False
    return OPERATORS[rule.operator](value, rule.threshold)


def alarm_message(target: ControlTarget, rule: AlarmRule, observed_status: Optional[TargetStatus],
                  metrics: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic text; two alarms are duplicates iff their messages match"""
    if rule.rule_type == AlarmRuleType.STATUS:
        return f"{target.label} reported status {observed_status.value}"
    return f"{target.label}: {rule.metric} {rule.operator} {rule.threshold:g}"


def alarm_severity(observed_status: Optional[TargetStatus]) -> AlarmSeverity:
    return AlarmSeverity.CRITICAL if observed_status == TargetStatus.FAULT else AlarmSeverity.WARNING


class AlarmEvaluator:

    def __init__(self, repositories: Repositories, event_manager: EventManager, scheduler: Scheduler):
        self.repositories = repositories
        self.event_manager = event_manager
        self.scheduler = scheduler

    async def evaluate(self, target_id: str, observed_status: Optional[Union[TargetStatus, str]],
                       now: Optional[datetime] = None,
                       metrics: Optional[Dict[str, Any]] = None) -> Optional[AlarmInstance]:
        """
        Raise an alarm for target_id if its rule matches and no unacknowledged
        alarm with the same message exists. Returns the new alarm or None.
        """
        now = now or self.scheduler.now()
        if observed_status is not None:
            observed_status = TargetStatus(observed_status)
        raised: List[AlarmInstance] = []

        def raise_alarm(target: ControlTarget) -> Optional[ControlTarget]:
            rule = target.alarm_rule
            if rule is None or not rule_matches(rule, observed_status, metrics):
                return None
            message = alarm_message(target, rule, observed_status, metrics)
            if any(not a.acknowledged and a.message == message for a in target.alarms):
                return None
            alarm = AlarmInstance(
                alarm_id=generate_alarm_id(target.target_id, now),
                severity=alarm_severity(observed_status),
                message=message,
                timestamp=now,
            )
            target.alarms.append(alarm)
            target.updated_at = now
            raised.append(alarm)
            return target

        target = await self.repositories.targets.update(target_id, raise_alarm)
        if not raised:
            return None

        alarm = raised[0]
        logger.warning(f"Alarm raised [{alarm.severity.value}]: {alarm.message}")
        if target is not None and target.alarm_rule and target.alarm_rule.notify:
            await self.event_manager.publish(manifold_channel(target.channel_key), "alarmRaised", {
                "manifoldId": target.channel_key,
                "valveId": target.target_id,
                "valveNumber": target.target_index,
                "alarmId": alarm.alarm_id,
                "severity": alarm.severity.value,
                "message": alarm.message,
            })
        return alarm

    async def acknowledge(self, target_id: str, alarm_id: str, acknowledged_by: Optional[str] = None,
                          now: Optional[datetime] = None) -> Optional[AlarmInstance]:
        now = now or self.scheduler.now()
        acknowledged: List[AlarmInstance] = []

        def ack(target: ControlTarget) -> Optional[ControlTarget]:
            for alarm in target.alarms:
                if alarm.alarm_id == alarm_id and not alarm.acknowledged:
                    alarm.acknowledged = True
                    alarm.acknowledged_by = acknowledged_by
                    alarm.acknowledged_at = now
                    acknowledged.append(alarm)
                    target.updated_at = now
                    return target
            return None

        await self.repositories.targets.update(target_id, ack)
        if acknowledged:
            logger.info(f"Alarm {alarm_id} on {target_id} acknowledged by {acknowledged_by or 'unknown'}")
            return acknowledged[0]
        return None

    async def active_alarms(self, target_id: str) -> List[AlarmInstance]:
        target = await self.repositories.targets.get(target_id)
        if target is None:
            return []
        return [a for a in target.alarms if not a.acknowledged]
