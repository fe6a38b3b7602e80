# The Things Stack v3 application events, delivered by MQTT or webhook.
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.downlinks import DownlinkCorrelationTracker
from ..core.event_manager import EventManager, application_channel
from ..core.gateways import GatewayMetricsAggregator
from ..core.presence import PresenceTracker
from ..models.lorawan import (
    DownlinkStatus, GatewayReception, GeoLocation, LastUplink, LoRaWANDevice, UplinkRecord,
    gateway_key, lorawan_device_key
)
from ..storage.repositories import Repositories
from ..utils.exceptions import ParseError
from ..utils.helpers import parse_timestamp
from ..utils.logging import get_logger

logger = get_logger(__name__)

DOWNLINK_EVENT_STATUS = {
    "queued": DownlinkStatus.SCHEDULED,
    "sent": DownlinkStatus.SENT,
    "ack": DownlinkStatus.ACKNOWLEDGED,
    "nack": DownlinkStatus.FAILED,
    "failed": DownlinkStatus.FAILED,
}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _location(value: Any) -> Optional[GeoLocation]:
    loc = _as_dict(value)
    if "latitude" not in loc or "longitude" not in loc:
        return None
    return GeoLocation(
        latitude=_number(loc["latitude"]),
        longitude=_number(loc["longitude"]),
        altitude=_number(loc["altitude"]) if loc.get("altitude") is not None else None,
    )


def parse_receptions(rx_metadata: Any) -> List[GatewayReception]:
    """One entry per receiving gateway, never just the first"""
    receptions = []
    for meta in rx_metadata if isinstance(rx_metadata, list) else []:
        meta = _as_dict(meta)
        ids = _as_dict(meta.get("gateway_ids"))
        receptions.append(GatewayReception(
            gateway_id=ids.get("gateway_id") or "unknown",
            gateway_eui=ids.get("eui"),
            rssi=_number(meta.get("rssi")),
            snr=_number(meta.get("snr")),
            location=_location(meta.get("location")),
        ))
    return receptions


def parse_uplink(topic: str, application_id: str, device_id: str, payload: Dict[str, Any],
                 default_time: datetime) -> UplinkRecord:
    uplink = payload.get("uplink_message")
    if not isinstance(uplink, dict):
        raise ParseError(topic, "missing uplink_message")

    ids = _as_dict(payload.get("end_device_ids"))
    settings = _as_dict(uplink.get("settings"))
    lora = _as_dict(_as_dict(settings.get("data_rate")).get("lora"))
    gateways = parse_receptions(uplink.get("rx_metadata"))
    first = gateways[0] if gateways else GatewayReception()
    received_at = parse_timestamp(uplink.get("received_at") or payload.get("received_at"), default_time)
    f_cnt = int(_number(uplink.get("f_cnt")))
    decoded = uplink.get("decoded_payload")

    return UplinkRecord(
        uplink_id=f"{application_id}.{device_id}.{f_cnt}.{int(received_at.timestamp() * 1000)}",
        device_key=lorawan_device_key(application_id, device_id),
        application_id=application_id,
        device_id=device_id,
        dev_addr=ids.get("dev_addr"),
        f_port=int(_number(uplink.get("f_port"))),
        f_cnt=f_cnt,
        raw_payload=uplink.get("frm_payload") or "",
        decoded_payload=decoded if isinstance(decoded, dict) else None,
        rssi=first.rssi,
        snr=first.snr,
        spreading_factor=int(_number(lora.get("spreading_factor"))),
        bandwidth=int(_number(lora.get("bandwidth"))),
        frequency=int(_number(settings.get("frequency"))),
        coding_rate=lora.get("coding_rate"),
        confirmed=bool(uplink.get("confirmed", False)),
        gateways=gateways,
        received_at=received_at,
    )


def downlink_correlation_ids(event: str, payload: Dict[str, Any]) -> List[str]:
    """Correlation ids may sit on the event body, its nested downlink or the envelope"""
    body = _as_dict(payload.get(f"downlink_{event}") or payload.get("downlink_message"))
    candidates = (
        body.get("correlation_ids"),
        _as_dict(body.get("downlink")).get("correlation_ids"),
        payload.get("correlation_ids"),
    )
    ids: List[str] = []
    for group in candidates:
        for cid in group if isinstance(group, list) else []:
            if isinstance(cid, str) and cid not in ids:
                ids.append(cid)
    return ids


def downlink_failure_reason(event: str, payload: Dict[str, Any]) -> Optional[str]:
    if event == "nack":
        return "Downlink negatively acknowledged by device"
    if event == "failed":
        error = _as_dict(_as_dict(payload.get("downlink_failed")).get("error"))
        return error.get("message") or error.get("message_format") or "Downlink failed"
    return None


class LoRaWANMessageHandlers:

    def __init__(self, presence: PresenceTracker, gateways: GatewayMetricsAggregator,
                 downlinks: DownlinkCorrelationTracker, repositories: Repositories,
                 event_manager: EventManager):
        self.presence = presence
        self.gateways = gateways
        self.downlinks = downlinks
        self.repositories = repositories
        self.event_manager = event_manager

    async def uplink_handler(self, topic: str, application_id: str, device_id: str,
                             payload: Dict[str, Any]) -> None:
        now = self.presence.scheduler.now()
        record = parse_uplink(topic, application_id, device_id, payload, now)

        if not await self.repositories.uplinks.insert(record):
            logger.debug(f"Duplicate uplink {record.uplink_id} ignored")
            return

        await self.presence.touch(record.device_key, now)

        last_uplink = LastUplink(
            timestamp=record.received_at,
            f_port=record.f_port,
            f_cnt=record.f_cnt,
            payload=record.raw_payload,
            decoded_payload=record.decoded_payload,
            rssi=record.rssi,
            snr=record.snr,
            spreading_factor=record.spreading_factor,
            bandwidth=record.bandwidth,
            frequency=record.frequency,
            gateway_id=record.gateways[0].gateway_id if record.gateways else "unknown",
        )

        def apply_uplink(device: LoRaWANDevice) -> LoRaWANDevice:
            device.is_online = True
            device.last_seen = record.received_at
            if record.dev_addr:
                device.dev_addr = record.dev_addr
            if device.connected_since is None:
                device.connected_since = record.received_at
            device.last_uplink = last_uplink
            device.total_uplinks += 1
            return device

        await self.repositories.lorawan_devices.update(f"{application_id}/{device_id}", apply_uplink)

        for reception in record.gateways:
            await self.gateways.record_uplink(
                gateway_key(application_id, reception.gateway_id),
                reception.rssi,
                reception.snr,
                record.received_at,
                application_id=application_id,
                gateway_eui=reception.gateway_eui,
                location=reception.location,
            )

        logger.info(f"Uplink stored: device={device_id}, port={record.f_port}, "
                    f"rssi={record.rssi}, gateways={len(record.gateways)}")
        await self.event_manager.publish(application_channel(application_id), "ttnUplink", {
            "applicationId": application_id,
            "deviceId": device_id,
            "uplink": record.model_dump(mode="json"),
        })

    async def join_handler(self, topic: str, application_id: str, device_id: str,
                           payload: Dict[str, Any]) -> None:
        now = self.presence.scheduler.now()
        ids = _as_dict(payload.get("end_device_ids"))
        dev_addr = ids.get("dev_addr") or _as_dict(payload.get("join_accept")).get("dev_addr")

        await self.presence.touch(lorawan_device_key(application_id, device_id), now)

        def apply_join(device: LoRaWANDevice) -> LoRaWANDevice:
            device.is_online = True
            device.last_seen = now
            if dev_addr:
                device.dev_addr = dev_addr
            if device.connected_since is None:
                device.connected_since = now
            return device

        await self.repositories.lorawan_devices.update(f"{application_id}/{device_id}", apply_join)

        logger.info(f"Device joined: {application_id}/{device_id}")
        await self.event_manager.publish(application_channel(application_id), "ttnDeviceJoin", {
            "applicationId": application_id,
            "deviceId": device_id,
            "devAddr": dev_addr,
        })

    async def downlink_handler(self, topic: str, application_id: str, device_id: str, event: str,
                               payload: Dict[str, Any]) -> None:
        new_status = DOWNLINK_EVENT_STATUS[event]
        correlation_ids = downlink_correlation_ids(event, payload)
        if not correlation_ids:
            logger.debug(f"Downlink {event} for {device_id} without correlation ids")
            return
        await self.downlinks.on_event(
            correlation_ids,
            new_status,
            self.presence.scheduler.now(),
            failure_reason=downlink_failure_reason(event, payload),
        )
