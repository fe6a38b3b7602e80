# src/iot_fleet/api/dependencies.py
from fastapi import Request
from typing import Annotated
from fastapi import Depends
from ..core.alarms import AlarmEvaluator
from ..core.commands import CommandQueueManager
from ..core.components import FleetComponents
from ..core.downlinks import DownlinkCorrelationTracker
from ..core.gateways import GatewayMetricsAggregator
from ..core.presence import PresenceTracker
from ..core.router import TelemetryIngestRouter

async def get_components(request: Request) -> FleetComponents:
    return request.app.state.components

async def get_command_queue(request: Request) -> CommandQueueManager:
    return request.app.state.components.commands

async def get_presence_tracker(request: Request) -> PresenceTracker:
    return request.app.state.components.presence

async def get_alarm_evaluator(request: Request) -> AlarmEvaluator:
    return request.app.state.components.alarms

async def get_gateway_metrics(request: Request) -> GatewayMetricsAggregator:
    return request.app.state.components.gateways

async def get_downlink_tracker(request: Request) -> DownlinkCorrelationTracker:
    return request.app.state.components.downlinks

async def get_router(request: Request) -> TelemetryIngestRouter:
    return request.app.state.components.router

# Type definitions for dependencies
ComponentsDependency = Annotated[FleetComponents, Depends(get_components)]
CommandQueueDependency = Annotated[CommandQueueManager, Depends(get_command_queue)]
PresenceDependency = Annotated[PresenceTracker, Depends(get_presence_tracker)]
AlarmDependency = Annotated[AlarmEvaluator, Depends(get_alarm_evaluator)]
GatewayDependency = Annotated[GatewayMetricsAggregator, Depends(get_gateway_metrics)]
DownlinkDependency = Annotated[DownlinkCorrelationTracker, Depends(get_downlink_tracker)]
RouterDependency = Annotated[TelemetryIngestRouter, Depends(get_router)]
