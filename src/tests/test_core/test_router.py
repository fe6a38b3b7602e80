import pytest
import json

from iot_fleet.core.router import RouteResult
from iot_fleet.models.commands import CommandStatus
from iot_fleet.models.device import DeviceState
from iot_fleet.models.lorawan import DownlinkStatus, LoRaWANDevice
from iot_fleet.models.targets import TargetStatus
from iot_fleet.utils.exceptions import ParseError, UnroutableTopic


def ttn_uplink(device_id="node-1", f_cnt=42, gateways=(("gw1", -80, 7.5),)):
    return {
        "end_device_ids": {
            "device_id": device_id,
            "application_ids": {"application_id": "app1"},
            "dev_addr": "260B1234",
        },
        "received_at": "2025-01-06T12:00:00.123456789Z",
        "uplink_message": {
            "f_port": 1,
            "f_cnt": f_cnt,
            "frm_payload": "AQID",
            "decoded_payload": {"temperature": 21.5},
            "rx_metadata": [
                {"gateway_ids": {"gateway_id": gw, "eui": f"EUI-{gw}"}, "rssi": rssi, "snr": snr}
                for gw, rssi, snr in gateways
            ],
            "settings": {
                "data_rate": {"lora": {"bandwidth": 125000, "spreading_factor": 7, "coding_rate": "4/5"}},
                "frequency": "868100000",
            },
            "received_at": "2025-01-06T12:00:00.123456789Z",
            "confirmed": False,
        },
    }


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(components):
    assert await components.router.route("devices/d1/reboot", b"{}") == RouteResult.IGNORED
    # our own command echo is not telemetry
    assert await components.router.route("manifolds/M1/command", b"{}") == RouteResult.IGNORED
    assert await components.router.route("v3/app1@ttn/devices/node-1/down/push", b"{}") == RouteResult.IGNORED


@pytest.mark.asyncio
async def test_foreign_topic_is_unroutable(components):
    with pytest.raises(UnroutableTopic):
        await components.router.route("homeassistant/sensor/x/config", b"{}")
    with pytest.raises(UnroutableTopic):
        await components.router.route("devices/d1", b"{}")


@pytest.mark.asyncio
async def test_malformed_payload_raises_parse_error(components):
    with pytest.raises(ParseError):
        await components.router.route("devices/d1/data", b"{not json")
    with pytest.raises(ParseError):
        await components.router.route("manifolds/M1/ack", b"[1, 2]")
    with pytest.raises(ParseError):
        await components.router.route("devices/d1/online", b"maybe")


@pytest.mark.asyncio
async def test_handle_message_drops_bad_input_without_raising(components):
    await components.router.handle_message("devices/d1/data", b"\xff\xfe")
    await components.router.handle_message("unknown/topic", b"")
    await components.router.handle_message("v3/app1@ttn/devices/node-1/up", b"{}")

    # the undecodable device message still counts as traffic from d1
    assert [p.device_key for p in await components.presence.list()] == ["devices/d1"]


@pytest.mark.asyncio
async def test_device_data_updates_presence_and_device(components, repositories, recorder):
    await repositories.devices.save(DeviceState(device_id="d1"))
    payload = json.dumps({"data": {"temperature": 22.5, "humidity": 41}}).encode()

    assert await components.router.route("devices/d1/data", payload) == RouteResult.HANDLED

    device = await repositories.devices.get("d1")
    assert device.status == "online"
    assert device.last_data.temperature == 22.5
    assert device.settings["humidity"] == 41
    assert (await components.presence.get("devices/d1")).is_online
    events = await recorder.of_type("deviceData")
    assert events[0][2]["data"]["temperature"] == 22.5


@pytest.mark.asyncio
async def test_top_level_readings_are_accepted(components, repositories):
    await repositories.devices.save(DeviceState(device_id="d2"))

    await components.router.route("devices/d2/data", b'{"temperature": 19, "value": 3}')

    device = await repositories.devices.get("d2")
    assert device.last_data.temperature == 19
    assert device.last_data.value == 3


@pytest.mark.asyncio
async def test_unknown_device_is_still_tracked(components, repositories):
    await components.router.route("devices/ghost/data", b'{"temperature": 1}')

    assert (await components.presence.get("devices/ghost")).is_online
    assert await repositories.devices.get("ghost") is None


@pytest.mark.asyncio
async def test_online_flag_messages(components, scheduler):
    await components.router.route("devices/d1/online", b"true")
    assert (await components.presence.get("devices/d1")).is_online

    await scheduler.advance(1)
    await components.router.route("devices/d1/online", b"false")
    presence = await components.presence.get("devices/d1")
    # only the sweep ends presence
    assert presence.is_online
    assert presence.last_seen == scheduler.now()


@pytest.mark.asyncio
async def test_manifold_status_updates_valves_and_alarms(components, repositories, valve, recorder):
    payload = json.dumps({"valves": [{"valveNumber": 1, "status": "FAULT"}, {"valveNumber": 9, "status": "ON"}]})

    await components.router.route("manifolds/M1/status", payload.encode())
    await components.router.route("manifolds/M1/status", payload.encode())

    target = await repositories.targets.get("valve-1")
    assert target.current_status == TargetStatus.FAULT
    assert len([a for a in target.alarms if not a.acknowledged]) == 1
    assert (await components.presence.get("manifolds/M1")).is_online
    status_events = await recorder.of_type("manifoldStatus")
    assert len(status_events) == 2
    assert status_events[0][0] == "manifold-M1"


@pytest.mark.asyncio
async def test_status_from_other_manifold_leaves_valve_alone(components, repositories, valve):
    await components.router.route("manifolds/M2/status", b'{"valves": [{"valveNumber": 1, "status": "ON"}]}')

    assert (await repositories.targets.get("valve-1")).current_status == TargetStatus.OFF


@pytest.mark.asyncio
async def test_manifold_ack_resolves_command(components, valve):
    command = await components.commands.enqueue("valve-1", "ON")

    payload = json.dumps({"commandId": command.command_id}).encode()
    assert await components.router.route("manifolds/M1/ack", payload) == RouteResult.HANDLED
    assert (await components.commands.get(command.command_id)).status == CommandStatus.ACKNOWLEDGED

    # unknown ack is a no-op
    assert await components.router.route("manifolds/M1/ack", b'{"commandId": "nope"}') == RouteResult.HANDLED


@pytest.mark.asyncio
async def test_uplink_heard_by_three_gateways(components, repositories, recorder):
    await repositories.lorawan_devices.save(LoRaWANDevice(application_id="app1", device_id="node-1"))
    payload = ttn_uplink(gateways=(("gw1", -80, 7.5), ("gw2", -95, 1.0), ("gw3", -110, -4.0)))

    result = await components.router.route("v3/app1@ttn/devices/node-1/up", json.dumps(payload).encode())

    assert result == RouteResult.HANDLED
    uplinks = await repositories.uplinks.recent("lorawan/app1/node-1")
    assert len(uplinks) == 1
    assert [g.gateway_id for g in uplinks[0].gateways] == ["gw1", "gw2", "gw3"]
    assert uplinks[0].rssi == -80
    assert uplinks[0].frequency == 868100000
    assert uplinks[0].spreading_factor == 7

    for gateway_id, rssi in (("gw1", -80), ("gw2", -95), ("gw3", -110)):
        metrics = await components.gateways.get(f"app1/{gateway_id}")
        assert metrics.total_seen == 1
        assert metrics.avg_rssi == rssi

    device = await repositories.lorawan_devices.get("app1/node-1")
    assert device.is_online
    assert device.total_uplinks == 1
    assert device.dev_addr == "260B1234"
    assert device.last_uplink.f_cnt == 42
    assert (await components.presence.get("lorawan/app1/node-1")).is_online
    assert len(await recorder.of_type("ttnUplink")) == 1


@pytest.mark.asyncio
async def test_duplicate_uplink_is_counted_once(components):
    raw = json.dumps(ttn_uplink()).encode()

    await components.router.route("v3/app1@ttn/devices/node-1/up", raw)
    await components.router.route("v3/app1@ttn/devices/node-1/up", raw)

    assert (await components.gateways.get("app1/gw1")).total_seen == 1


@pytest.mark.asyncio
async def test_join_keeps_connected_since(components, repositories, scheduler):
    await repositories.lorawan_devices.save(LoRaWANDevice(application_id="app1", device_id="node-1"))
    join = {"end_device_ids": {"device_id": "node-1", "dev_addr": "260B0001",
                               "application_ids": {"application_id": "app1"}}}

    await components.router.route("v3/app1@ttn/devices/node-1/join", json.dumps(join).encode())
    first = (await repositories.lorawan_devices.get("app1/node-1")).connected_since
    await scheduler.advance(60)
    await components.router.route("v3/app1@ttn/devices/node-1/join", json.dumps(join).encode())

    device = await repositories.lorawan_devices.get("app1/node-1")
    assert device.connected_since == first
    assert device.dev_addr == "260B0001"


@pytest.mark.asyncio
async def test_downlink_lifecycle_topics(components):
    await components.downlinks.create("app1", "node-1", "AQI=", correlation_id="dl-1")
    base = "v3/app1@ttn/devices/node-1/down"

    def event(name, body):
        return json.dumps({
            "end_device_ids": {"device_id": "node-1", "application_ids": {"application_id": "app1"}},
            "correlation_ids": ["as:downlink:01H"],
            f"downlink_{name}": body,
        }).encode()

    await components.router.route(f"{base}/queued", event("queued", {"correlation_ids": ["dl-1"]}))
    assert (await components.downlinks.get("dl-1")).status == DownlinkStatus.SCHEDULED

    await components.router.route(f"{base}/sent", event("sent", {"correlation_ids": ["dl-1"]}))
    await components.router.route(f"{base}/ack", event("ack", {"correlation_ids": ["dl-1"]}))
    await components.router.route(f"{base}/sent", event("sent", {"correlation_ids": ["dl-1"]}))

    assert (await components.downlinks.get("dl-1")).status == DownlinkStatus.ACKNOWLEDGED


@pytest.mark.asyncio
async def test_downlink_failed_reason(components):
    await components.downlinks.create("app1", "node-1", "AQI=", correlation_id="dl-2")
    body = {
        "end_device_ids": {"device_id": "node-1", "application_ids": {"application_id": "app1"}},
        "downlink_failed": {
            "downlink": {"correlation_ids": ["dl-2"]},
            "error": {"message": "no gateway available"},
        },
    }

    await components.router.route("v3/app1@ttn/devices/node-1/down/failed", json.dumps(body).encode())

    record = await components.downlinks.get("dl-2")
    assert record.status == DownlinkStatus.FAILED
    assert record.failure_reason == "no gateway available"


@pytest.mark.asyncio
async def test_transport_messages_reach_router(components, transport, valve):
    command = await components.commands.enqueue("valve-1", "OFF")

    await transport.handler("manifolds/M1/ack", json.dumps({"commandId": command.command_id}).encode())

    assert (await components.commands.get(command.command_id)).status == CommandStatus.ACKNOWLEDGED


@pytest.mark.asyncio
async def test_any_device_message_refreshes_presence(components):
    assert await components.router.route("devices/d2/heartbeat", b"{}") == RouteResult.IGNORED
    assert (await components.presence.get("devices/d2")).is_online

    with pytest.raises(ParseError):
        await components.router.route("manifolds/M3/status", b"{broken")
    assert (await components.presence.get("manifolds/M3")).is_online

    # echo of a command this process published
    assert await components.router.route("manifolds/M4/command", b"{}") == RouteResult.IGNORED
    assert await components.presence.get("manifolds/M4") is None


@pytest.mark.asyncio
async def test_bad_valve_numbers_are_skipped(components, repositories, valve, recorder):
    payload = json.dumps({"valves": [
        {"valveNumber": 1, "status": "FAULT"},
        {"valveNumber": None, "status": "ON"},
        {"valveNumber": [2], "status": "ON"},
    ]})

    assert await components.router.route("manifolds/M1/status", payload.encode()) == RouteResult.HANDLED

    target = await repositories.targets.get("valve-1")
    assert target.current_status == TargetStatus.FAULT
    status_events = await recorder.of_type("manifoldStatus")
    assert len(status_events) == 1
    assert status_events[0][2]["valves"] == [{"valveNumber": 1, "status": "FAULT"}]
