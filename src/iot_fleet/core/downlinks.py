# Downlink lifecycle matched back through correlation ids.
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from .event_manager import EventManager, application_channel
from .scheduler import Scheduler
from ..adapters.base import TransportAdapter
from ..models.lorawan import (
    DownlinkPriority, DownlinkRecord, DownlinkStatus, LoRaWANDevice, lorawan_device_key
)
from ..storage.repositories import Repositories
from ..utils.helpers import generate_correlation_id
from ..utils.logging import get_logger

logger = get_logger(__name__)

# timestamp field written for each status
STATUS_TIMESTAMP_FIELDS: Dict[DownlinkStatus, str] = {
    DownlinkStatus.SCHEDULED: "scheduled_at",
    DownlinkStatus.SENT: "sent_at",
    DownlinkStatus.ACKNOWLEDGED: "acknowledged_at",
    DownlinkStatus.FAILED: "failed_at",
}

STATUS_EVENTS: Dict[DownlinkStatus, str] = {
    DownlinkStatus.SCHEDULED: "ttnDownlinkQueued",
    DownlinkStatus.SENT: "ttnDownlinkSent",
    DownlinkStatus.ACKNOWLEDGED: "ttnDownlinkAck",
    DownlinkStatus.FAILED: "ttnDownlinkFailed",
}


def push_topic(application_id: str, tenant: str, device_id: str) -> str:
    return f"v3/{application_id}@{tenant}/devices/{device_id}/down/push"


class DownlinkCorrelationTracker:

    def __init__(self, repositories: Repositories, transport: TransportAdapter,
                 event_manager: EventManager, scheduler: Scheduler, tenant: str = "ttn"):
        self.repositories = repositories
        self.transport = transport
        self.event_manager = event_manager
        self.scheduler = scheduler
        self.tenant = tenant

    async def create(self, application_id: str, device_id: str, payload: str, f_port: int = 1,
                     confirmed: bool = False,
                     priority: Union[DownlinkPriority, str] = DownlinkPriority.NORMAL,
                     correlation_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> DownlinkRecord:
        """Register a PENDING downlink so later lifecycle events can find it"""
        now = now or self.scheduler.now()
        record = DownlinkRecord(
            correlation_id=correlation_id or generate_correlation_id(now),
            device_key=lorawan_device_key(application_id, device_id),
            application_id=application_id,
            device_id=device_id,
            f_port=f_port,
            payload=payload,
            confirmed=confirmed,
            priority=DownlinkPriority(priority),
            created_at=now,
        )
        if not await self.repositories.downlinks.insert(record):
            existing = await self.repositories.downlinks.get(record.correlation_id)
            logger.warning(f"Downlink {record.correlation_id} already registered")
            return existing
        logger.info(f"Downlink {record.correlation_id} registered for {record.device_key}")
        return record

    async def send(self, application_id: str, device_id: str, payload: str, f_port: int = 1,
                   confirmed: bool = False,
                   priority: Union[DownlinkPriority, str] = DownlinkPriority.NORMAL,
                   correlation_id: Optional[str] = None) -> DownlinkRecord:
        """Register a downlink and push it to the network server over the transport"""
        record = await self.create(application_id, device_id, payload, f_port=f_port, confirmed=confirmed,
                                   priority=priority, correlation_id=correlation_id)
        message = {
            "downlinks": [{
                "f_port": record.f_port,
                "frm_payload": record.payload,
                "priority": record.priority.value,
                "confirmed": record.confirmed,
                "correlation_ids": [record.correlation_id],
            }]
        }
        result = await self.transport.publish(push_topic(application_id, self.tenant, device_id), message, qos=1)
        if not result.ok:
            reason = str(result.error) or type(result.error).__name__
            updated = await self.on_event([record.correlation_id], DownlinkStatus.FAILED,
                                          self.scheduler.now(), failure_reason=reason)
            return updated[0] if updated else record

        def count_downlink(device: LoRaWANDevice) -> LoRaWANDevice:
            device.total_downlinks += 1
            return device
        await self.repositories.lorawan_devices.update(f"{application_id}/{device_id}", count_downlink)
        return record

    async def on_event(self, correlation_ids: Iterable[str], new_status: Union[DownlinkStatus, str],
                       timestamp: Optional[datetime] = None,
                       failure_reason: Optional[str] = None) -> List[DownlinkRecord]:
        """
        Apply a lifecycle event to every listed downlink independently.
        Unknown ids and backward moves are ignored. Returns the records that changed.
        """
        new_status = DownlinkStatus(new_status)
        timestamp = timestamp or self.scheduler.now()
        changed: List[DownlinkRecord] = []

        for correlation_id in dict.fromkeys(correlation_ids):
            def advance(record: DownlinkRecord) -> Optional[DownlinkRecord]:
                if not record.accepts(new_status):
                    return None
                record.status = new_status
                field = STATUS_TIMESTAMP_FIELDS.get(new_status)
                if field:
                    setattr(record, field, timestamp)
                if new_status == DownlinkStatus.FAILED:
                    record.failure_reason = failure_reason or "Unknown failure"
                return record

            record = await self.repositories.downlinks.update(correlation_id, advance)
            if record is None:
                logger.debug(f"Downlink event {new_status.value} ignored for {correlation_id}")
                continue
            logger.info(f"Downlink {correlation_id} -> {new_status.value}")
            changed.append(record)

        for record in changed:
            await self.event_manager.publish(application_channel(record.application_id), STATUS_EVENTS[new_status], {
                "applicationId": record.application_id,
                "deviceId": record.device_id,
                "correlationId": record.correlation_id,
                "status": record.status.value,
                "failureReason": record.failure_reason,
            })
        return changed

    async def get(self, correlation_id: str) -> Optional[DownlinkRecord]:
        return await self.repositories.downlinks.get(correlation_id)

    async def list(self, application_id: Optional[str] = None, device_id: Optional[str] = None,
                   limit: int = 50) -> List[DownlinkRecord]:
        records = await self.repositories.downlinks.find(
            lambda d: (application_id is None or d.application_id == application_id)
            and (device_id is None or d.device_id == device_id)
        )
        records.sort(key=lambda d: d.created_at, reverse=True)
        return records[:limit]
