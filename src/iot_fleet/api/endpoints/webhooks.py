from fastapi import APIRouter, HTTPException, Header, Request
from typing import Dict, Any, Optional
from ...utils.exceptions import ParseError
from ...utils.logging import get_logger
from ..dependencies import ComponentsDependency, RouterDependency

logger = get_logger(__name__)

webhook_router = APIRouter()

# webhook path suffix -> event name used on the MQTT integration
WEBHOOK_EVENTS = {
    "uplink": "up",
    "join": "join",
    "downlink/queued": "down/queued",
    "downlink/sent": "down/sent",
    "downlink/ack": "down/ack",
    "downlink/nack": "down/nack",
    "downlink/failed": "down/failed",
}


'''
TTN webhook configuration, base URL https://<host>/api/ttn/webhook/<application_id>
  Uplink message      /uplink
  Join accept         /join
  Downlink ack        /downlink/ack
  Downlink nack       /downlink/nack
  Downlink sent       /downlink/sent
  Downlink failed     /downlink/failed
  Downlink queued     /downlink/queued
'''


@webhook_router.post("/{application_id}/{event:path}")
async def receive_webhook(application_id: str, event: str, request: Request,
                          components: ComponentsDependency = None,
                          router: RouterDependency = None,
                          x_webhook_secret: Optional[str] = Header(None)) -> Dict[str, Any]:
    expected_secret = components.config.lorawan.webhook_secret
    if expected_secret and x_webhook_secret != expected_secret:
        logger.error(f"Invalid webhook secret for application {application_id}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    lorawan_event = WEBHOOK_EVENTS.get(event)
    if lorawan_event is None:
        raise HTTPException(status_code=404, detail=f"Unknown webhook event: {event}")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    device_ids = payload.get("end_device_ids")
    device_id = device_ids.get("device_id") if isinstance(device_ids, dict) else None
    if not device_id:
        raise HTTPException(status_code=400, detail="Missing end_device_ids.device_id")

    try:
        result = await router.route_lorawan(application_id, device_id, lorawan_event, payload)
    except ParseError as e:
        logger.warning(f"Dropping webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "result": result.value}
