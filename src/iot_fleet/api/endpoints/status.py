from fastapi import APIRouter, HTTPException
from typing import Dict, Any, List, Optional
from ...models.lorawan import GatewayMetrics, gateway_key
from ...models.presence import DevicePresence
from ..dependencies import ComponentsDependency, GatewayDependency, PresenceDependency

status_router = APIRouter()


@status_router.get("/status")
async def service_status(components: ComponentsDependency = None) -> Dict[str, Any]:
    return components.status()


@status_router.get("/presence", response_model=List[DevicePresence])
async def list_presence(online: Optional[bool] = None,
                        presence: PresenceDependency = None) -> List[DevicePresence]:
    return await presence.list(is_online=online)


@status_router.get("/presence/{device_key:path}", response_model=DevicePresence)
async def get_presence(device_key: str, presence: PresenceDependency = None) -> DevicePresence:
    record = await presence.get(device_key)
    if not record:
        raise HTTPException(status_code=404, detail=f"No presence for {device_key}")
    return record


@status_router.get("/gateways", response_model=List[GatewayMetrics])
async def list_gateways(application_id: Optional[str] = None,
                        gateways: GatewayDependency = None) -> List[GatewayMetrics]:
    return await gateways.list(application_id=application_id)


@status_router.get("/gateways/{application_id}/{gateway_id}", response_model=GatewayMetrics)
async def get_gateway(application_id: str, gateway_id: str,
                      gateways: GatewayDependency = None) -> GatewayMetrics:
    metrics = await gateways.get(gateway_key(application_id, gateway_id))
    if not metrics:
        raise HTTPException(status_code=404, detail=f"Gateway {gateway_id} not found")
    return metrics
