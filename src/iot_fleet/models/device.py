from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class DeviceData(BaseModel):
    timestamp: datetime
    temperature: float = 0
    humidity: float = 0
    value: float = 0


class DeviceState(BaseModel):
    """Generic sensor/actuator device owned by the CRUD layer."""
    device_id: str
    name: Optional[str] = None
    status: str = "offline"
    last_seen: Optional[datetime] = None
    last_data: Optional[DeviceData] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
