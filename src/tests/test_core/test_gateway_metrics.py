import pytest


@pytest.mark.asyncio
async def test_running_average_over_samples(components, scheduler):
    expected = [(-80, -80, 1), (-90, -85, 2), (-70, -80, 3)]
    for rssi, avg, total in expected:
        metrics = await components.gateways.record_uplink("app1/gw1", rssi, 7.0, scheduler.now())
        assert metrics.avg_rssi == avg
        assert metrics.total_seen == total
        assert metrics.last_rssi == rssi


@pytest.mark.asyncio
async def test_averages_are_not_rounded(components, scheduler):
    await components.gateways.record_uplink("app1/gw1", -80, 5.0, scheduler.now())
    await components.gateways.record_uplink("app1/gw1", -81, 5.5, scheduler.now())
    metrics = await components.gateways.record_uplink("app1/gw1", -81, 6.0, scheduler.now())

    assert metrics.avg_rssi == pytest.approx(-242 / 3)
    assert metrics.avg_snr == pytest.approx(5.5)
    assert metrics.last_snr == 6.0


@pytest.mark.asyncio
async def test_new_gateway_is_created_online(components, scheduler):
    metrics = await components.gateways.record_uplink(
        "app1/gw9", -100, -3.5, scheduler.now(), application_id="app1", gateway_eui="AA555A0000000000"
    )

    assert metrics.is_online
    assert metrics.first_seen == scheduler.now()
    assert metrics.last_seen == scheduler.now()
    assert metrics.gateway_eui == "AA555A0000000000"


@pytest.mark.asyncio
async def test_gateways_are_independent(components, scheduler):
    await components.gateways.record_uplink("app1/gw1", -80, 1, scheduler.now())
    await components.gateways.record_uplink("app1/gw2", -60, 2, scheduler.now())

    gw1 = await components.gateways.get("app1/gw1")
    gw2 = await components.gateways.get("app1/gw2")
    assert (gw1.total_seen, gw1.avg_rssi) == (1, -80)
    assert (gw2.total_seen, gw2.avg_rssi) == (1, -60)


@pytest.mark.asyncio
async def test_update_is_broadcast_to_application(components, scheduler, recorder):
    await components.gateways.record_uplink("app1/gw1", -80, 1, scheduler.now(), application_id="app1")

    events = await recorder.of_type("ttnGatewayUpdate")
    assert events[0][0] == "ttn-app1"
    assert events[0][2]["totalSeen"] == 1
