from fastapi import APIRouter, HTTPException
from typing import List, Optional
from pydantic import BaseModel
from ...models.targets import AlarmInstance
from ..dependencies import AlarmDependency

alarm_router = APIRouter()


class AcknowledgeRequest(BaseModel):
    acknowledged_by: Optional[str] = None


@alarm_router.get("/targets/{target_id}/alarms", response_model=List[AlarmInstance])
async def get_active_alarms(target_id: str, alarms: AlarmDependency = None) -> List[AlarmInstance]:
    return await alarms.active_alarms(target_id)


@alarm_router.post("/targets/{target_id}/alarms/{alarm_id}/acknowledge", response_model=AlarmInstance)
async def acknowledge_alarm(target_id: str, alarm_id: str, request: Optional[AcknowledgeRequest] = None,
                            alarms: AlarmDependency = None) -> AlarmInstance:
    acknowledged_by = request.acknowledged_by if request else None
    alarm = await alarms.acknowledge(target_id, alarm_id, acknowledged_by=acknowledged_by)
    if not alarm:
        raise HTTPException(status_code=404, detail=f"No active alarm {alarm_id} on {target_id}")
    return alarm
