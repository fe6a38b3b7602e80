from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class DevicePresence(BaseModel):
    device_key: str
    is_online: bool = False
    last_seen: datetime
    connected_since: Optional[datetime] = None


class PresenceTransition(BaseModel):
    """Emitted exactly once per online/offline edge"""
    device_key: str
    is_online: bool
    timestamp: datetime
    last_seen: datetime


def presence_key(domain: str, key: str) -> str:
    """devices/{id}, manifolds/{id}, lorawan/{app}/{device}"""
    return f"{domain}/{key}"
