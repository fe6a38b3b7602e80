# src/iot_fleet/api/routes.py
from fastapi import FastAPI

from .endpoints.alarms import alarm_router
from .endpoints.commands import command_router
from .endpoints.downlinks import downlink_router
from .endpoints.realtime import realtime_router
from .endpoints.status import status_router
from .endpoints.webhooks import webhook_router
from .ws_manager import ConnectionManager
from ..core.components import FleetComponents


def create_api(components: FleetComponents) -> FastAPI:
    """FastAPI application over already constructed components"""
    app = FastAPI(
        title="IoT Fleet API",
        description="Command queue, presence and LoRaWAN state of the device fleet",
        version="1.0.0"
    )
    app.state.components = components
    app.state.ws_manager = ConnectionManager()

    app.include_router(command_router, prefix="/api/v1")
    app.include_router(status_router, prefix="/api/v1")
    app.include_router(alarm_router, prefix="/api/v1")
    app.include_router(downlink_router, prefix="/api/v1")
    app.include_router(webhook_router, prefix="/api/ttn/webhook")
    app.include_router(realtime_router)
    return app
