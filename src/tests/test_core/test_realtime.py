import pytest
import json
from unittest.mock import AsyncMock

from iot_fleet.api.ws_manager import ConnectionManager
from iot_fleet.core.event_manager import ALL_CHANNELS


@pytest.mark.asyncio
async def test_events_reach_only_their_channel(event_manager):
    manager = ConnectionManager()
    manifold_socket, other_socket = AsyncMock(), AsyncMock()
    await manager.connect("manifold-M1", manifold_socket)
    await manager.connect("manifold-M2", other_socket)
    await event_manager.subscribe(ALL_CHANNELS, manager.on_event)

    await event_manager.publish("manifold-M1", "commandAcknowledged", {"commandId": "c1"})
    await event_manager.drain()

    manifold_socket.accept.assert_awaited_once()
    message = json.loads(manifold_socket.send_text.await_args.args[0])
    assert message["event"] == "commandAcknowledged"
    assert message["data"]["commandId"] == "c1"
    assert "timestamp" in message["data"]
    other_socket.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_broken_socket_is_dropped():
    manager = ConnectionManager()
    socket = AsyncMock()
    socket.send_text.side_effect = RuntimeError("closed")
    await manager.connect("devices", socket)

    await manager.on_event("devices", "deviceStatus", {"deviceId": "d1"})

    assert "devices" not in manager.active_connections


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(event_manager):
    received = []

    async def broken(channel, event_type, data):
        raise RuntimeError("subscriber bug")

    async def healthy(channel, event_type, data):
        received.append(event_type)

    await event_manager.subscribe("devices", broken)
    await event_manager.subscribe("devices", healthy)

    await event_manager.publish("devices", "deviceStatus", {"deviceId": "d1"})
    await event_manager.drain()

    assert received == ["deviceStatus"]


@pytest.mark.asyncio
async def test_unsubscribed_callback_stops_receiving(event_manager):
    received = []

    async def listener(channel, event_type, data):
        received.append(event_type)

    await event_manager.subscribe("devices", listener)
    await event_manager.publish("devices", "deviceStatus", {"deviceId": "d1"})
    await event_manager.drain()
    await event_manager.unsubscribe("devices", listener)
    await event_manager.publish("devices", "deviceData", {"deviceId": "d1"})
    await event_manager.drain()

    assert received == ["deviceStatus"]
    assert "devices" not in event_manager.subscribers
