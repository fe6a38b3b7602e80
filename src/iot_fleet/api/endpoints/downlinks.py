from fastapi import APIRouter, HTTPException
from typing import List, Optional
from pydantic import BaseModel, Field
from ...models.lorawan import DownlinkPriority, DownlinkRecord
from ..dependencies import DownlinkDependency

downlink_router = APIRouter()


class DownlinkRequest(BaseModel):
    payload: str = Field(..., description="Base64 encoded frm_payload")
    f_port: int = Field(1, ge=1, le=223)
    confirmed: bool = False
    priority: DownlinkPriority = DownlinkPriority.NORMAL
    correlation_id: Optional[str] = None


@downlink_router.post("/applications/{application_id}/devices/{device_id}/downlinks",
                      response_model=DownlinkRecord)
async def send_downlink(application_id: str, device_id: str, request: DownlinkRequest,
                        downlinks: DownlinkDependency = None) -> DownlinkRecord:
    return await downlinks.send(
        application_id,
        device_id,
        request.payload,
        f_port=request.f_port,
        confirmed=request.confirmed,
        priority=request.priority,
        correlation_id=request.correlation_id,
    )


@downlink_router.get("/downlinks", response_model=List[DownlinkRecord])
async def list_downlinks(application_id: Optional[str] = None, device_id: Optional[str] = None,
                         limit: int = 50, downlinks: DownlinkDependency = None) -> List[DownlinkRecord]:
    return await downlinks.list(application_id=application_id, device_id=device_id,
                                limit=max(1, min(limit, 500)))


@downlink_router.get("/downlinks/{correlation_id}", response_model=DownlinkRecord)
async def get_downlink(correlation_id: str, downlinks: DownlinkDependency = None) -> DownlinkRecord:
    record = await downlinks.get(correlation_id)
    if not record:
        raise HTTPException(status_code=404, detail=f"Downlink {correlation_id} not found")
    return record
