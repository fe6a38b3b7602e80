from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field


class GeoLocation(BaseModel):
    latitude: float
    longitude: float
    altitude: Optional[float] = None


class GatewayReception(BaseModel):
    """One gateway's view of an uplink"""
    gateway_id: str = "unknown"
    gateway_eui: Optional[str] = None
    rssi: float = 0
    snr: float = 0
    location: Optional[GeoLocation] = None


class UplinkRecord(BaseModel):
    """Immutable, append-only record of one received radio message."""
    uplink_id: str
    device_key: str
    application_id: str
    device_id: str
    dev_addr: Optional[str] = None
    f_port: int = 0
    f_cnt: int = 0
    raw_payload: str = ""
    decoded_payload: Optional[Dict[str, Any]] = None
    rssi: float = 0
    snr: float = 0
    spreading_factor: int = 0
    bandwidth: int = 0
    frequency: int = 0
    coding_rate: Optional[str] = None
    confirmed: bool = False
    gateways: List[GatewayReception] = Field(default_factory=list)
    received_at: datetime

    model_config = {"frozen": True}


class LastUplink(BaseModel):
    timestamp: datetime
    f_port: int
    f_cnt: int
    payload: str
    decoded_payload: Optional[Dict[str, Any]] = None
    rssi: float
    snr: float
    spreading_factor: int
    bandwidth: int
    frequency: int
    gateway_id: str


class LoRaWANDevice(BaseModel):
    application_id: str
    device_id: str
    dev_addr: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None
    connected_since: Optional[datetime] = None
    last_uplink: Optional[LastUplink] = None
    total_uplinks: int = 0
    total_downlinks: int = 0


class GatewayMetrics(BaseModel):
    gateway_key: str
    application_id: Optional[str] = None
    gateway_eui: Optional[str] = None
    location: Optional[GeoLocation] = None
    total_seen: int = 0
    avg_rssi: float = 0
    avg_snr: float = 0
    last_rssi: float = 0
    last_snr: float = 0
    is_online: bool = True
    first_seen: datetime
    last_seen: datetime


class DownlinkStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    FAILED = "FAILED"


TERMINAL_DOWNLINK_STATUSES: Set[DownlinkStatus] = {
    DownlinkStatus.ACKNOWLEDGED,
    DownlinkStatus.FAILED,
}

# Position in PENDING -> SCHEDULED -> SENT -> {ACKNOWLEDGED, FAILED}
DOWNLINK_RANK: Dict[DownlinkStatus, int] = {
    DownlinkStatus.PENDING: 0,
    DownlinkStatus.SCHEDULED: 1,
    DownlinkStatus.SENT: 2,
    DownlinkStatus.ACKNOWLEDGED: 3,
    DownlinkStatus.FAILED: 3,
}


class DownlinkPriority(str, Enum):
    LOWEST = "LOWEST"
    LOW = "LOW"
    BELOW_NORMAL = "BELOW_NORMAL"
    NORMAL = "NORMAL"
    ABOVE_NORMAL = "ABOVE_NORMAL"
    HIGH = "HIGH"
    HIGHEST = "HIGHEST"


class DownlinkRecord(BaseModel):
    correlation_id: str
    device_key: str
    application_id: str
    device_id: str
    f_port: int = Field(1, ge=1, le=223)
    payload: str  # base64 frm_payload
    confirmed: bool = False
    priority: DownlinkPriority = DownlinkPriority.NORMAL
    status: DownlinkStatus = DownlinkStatus.PENDING
    created_at: datetime
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def accepts(self, new_status: DownlinkStatus) -> bool:
        """Only forward moves along the partial order are applied"""
        if self.status in TERMINAL_DOWNLINK_STATUSES:
            return False
        return DOWNLINK_RANK[new_status] > DOWNLINK_RANK[self.status]


def lorawan_device_key(application_id: str, device_id: str) -> str:
    return f"lorawan/{application_id}/{device_id}"


def gateway_key(application_id: str, gateway_id: str) -> str:
    return f"{application_id}/{gateway_id}"
