import pytest
import asyncio
from unittest.mock import AsyncMock
import aiomqtt

from iot_fleet.adapters.aws_iot import AwsIotAdapter
from iot_fleet.adapters.embedded import EmbeddedBrokerAdapter
from iot_fleet.adapters.factory import create_transport
from iot_fleet.adapters.mqtt import MQTTAdapter
from iot_fleet.utils.exceptions import ConfigurationError, NotConnectedError, PublishFailedError


@pytest.fixture
def mqtt_adapter():
    return MQTTAdapter({"host": "localhost", "port": 1883, "client_id": "test"})


@pytest.fixture
def cert_files(tmp_path):
    paths = {}
    for name in ("cert_path", "key_path", "ca_path"):
        path = tmp_path / f"{name}.pem"
        path.write_text("-----BEGIN CERTIFICATE-----\n")
        paths[name] = str(path)
    return paths


@pytest.mark.asyncio
async def test_publish_while_disconnected_fails_fast(mqtt_adapter):
    result = await mqtt_adapter.publish("manifolds/M1/command", {"commandId": "c1"})

    assert not result.ok
    assert isinstance(result.error, NotConnectedError)
    assert not mqtt_adapter.is_connected


@pytest.mark.asyncio
async def test_publish_through_client(mqtt_adapter):
    mqtt_adapter.client = AsyncMock()
    mqtt_adapter.connected.set()

    result = await mqtt_adapter.publish("manifolds/M1/command", {"commandId": "c1"}, qos=1)

    assert result.ok
    mqtt_adapter.client.publish.assert_awaited_once_with(
        "manifolds/M1/command", payload=b'{"commandId": "c1"}', qos=1, retain=False
    )


@pytest.mark.asyncio
async def test_broker_error_becomes_publish_failed(mqtt_adapter):
    mqtt_adapter.client = AsyncMock()
    mqtt_adapter.client.publish.side_effect = aiomqtt.MqttError("connection reset")
    mqtt_adapter.connected.set()

    result = await mqtt_adapter.publish("manifolds/M1/command", "{}")

    assert isinstance(result.error, PublishFailedError)
    assert "connection reset" in str(result.error)


@pytest.mark.asyncio
async def test_subscribe_while_disconnected_is_remembered(mqtt_adapter):
    await mqtt_adapter.subscribe("devices/+/data")

    assert "devices/+/data" in mqtt_adapter.subscriptions


@pytest.mark.asyncio
async def test_subscribe_all_after_reconnect(mqtt_adapter):
    await mqtt_adapter.subscribe("devices/+/data")
    await mqtt_adapter.subscribe("manifolds/+/ack")
    client = AsyncMock()

    await mqtt_adapter._subscribe_all(client)

    subscribed = sorted(call.args[0] for call in client.subscribe.await_args_list)
    assert subscribed == ["devices/+/data", "manifolds/+/ack"]


@pytest.mark.asyncio
async def test_workers_deliver_messages_to_handler(mqtt_adapter):
    handler = AsyncMock()
    mqtt_adapter.set_message_handler(handler)
    worker = asyncio.create_task(mqtt_adapter._handler_worker(0))

    mqtt_adapter._enqueue_message("devices/d1/data", '{"temperature": 1}')
    await asyncio.wait_for(mqtt_adapter._message_queue.join(), timeout=1)

    handler.assert_awaited_once_with("devices/d1/data", b'{"temperature": 1}')
    worker.cancel()


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_worker(mqtt_adapter):
    handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
    mqtt_adapter.set_message_handler(handler)
    worker = asyncio.create_task(mqtt_adapter._handler_worker(0))

    mqtt_adapter._enqueue_message("a/b/c", b"1")
    mqtt_adapter._enqueue_message("a/b/c", b"2")
    await asyncio.wait_for(mqtt_adapter._message_queue.join(), timeout=1)

    assert handler.await_count == 2
    worker.cancel()


def test_full_inbound_queue_drops_messages():
    adapter = MQTTAdapter({"host": "localhost", "message_queue_size": 1})

    adapter._enqueue_message("a/b/c", b"1")
    adapter._enqueue_message("a/b/c", b"2")

    assert adapter._message_queue.qsize() == 1


@pytest.mark.asyncio
async def test_connect_timeout_raises_and_stops():
    adapter = MQTTAdapter({
        "host": "127.0.0.1",
        "port": 1,
        "connect_timeout": 0.3,
        "reconnect_interval": 0.05,
        "status_topic": False,
    })

    with pytest.raises(NotConnectedError):
        await adapter.connect()

    assert adapter._connection_task is None
    assert not adapter.is_connected


def test_invalid_mqtt_config():
    with pytest.raises(ConfigurationError):
        MQTTAdapter({"port": 1883})


def test_factory_selects_embedded_by_default():
    adapter = create_transport({"embedded": {"port": 18830}})

    assert isinstance(adapter, EmbeddedBrokerAdapter)
    assert adapter.config.host == "127.0.0.1"
    assert adapter.config.port == 18830


def test_factory_selects_remote_broker():
    adapter = create_transport({"backend": "mqtt", "handler_concurrency": 8,
                                "mqtt": {"host": "broker.local"}})

    assert type(adapter) is MQTTAdapter
    assert adapter.handler_concurrency == 8


def test_factory_selects_aws_iot(cert_files):
    adapter = create_transport({"backend": "aws_iot",
                                "aws_iot": {"endpoint": "abc-ats.iot.eu-west-1.amazonaws.com", **cert_files}})

    assert isinstance(adapter, AwsIotAdapter)
    assert adapter.config.port == 8883
    assert adapter.config.ssl
    assert adapter.config.clean_session is False
    assert adapter.config.max_qos == 1


def test_factory_rejects_unknown_backend():
    with pytest.raises(ConfigurationError):
        create_transport({"backend": "carrier-pigeon"})


def test_aws_iot_requires_certificate_files(tmp_path):
    with pytest.raises(ConfigurationError):
        AwsIotAdapter({
            "endpoint": "abc-ats.iot.eu-west-1.amazonaws.com",
            "cert_path": str(tmp_path / "missing.crt"),
            "key_path": str(tmp_path / "missing.key"),
            "ca_path": str(tmp_path / "missing-ca.pem"),
        })


@pytest.mark.asyncio
async def test_aws_iot_caps_qos(cert_files):
    adapter = AwsIotAdapter({"endpoint": "abc-ats.iot.eu-west-1.amazonaws.com", **cert_files})
    adapter.client = AsyncMock()
    adapter.connected.set()

    await adapter.publish("manifolds/M1/command", b"{}", qos=2)

    assert adapter.client.publish.await_args.kwargs["qos"] == 1


def test_unknown_tls_version_is_rejected_up_front():
    with pytest.raises(ConfigurationError):
        MQTTAdapter({"host": "broker.local", "ssl": True, "tls_version": "TLSv9"})


@pytest.mark.asyncio
async def test_unreadable_ca_fails_connect_without_retrying(tmp_path):
    adapter = MQTTAdapter({"host": "broker.local", "ssl": True, "ca_cert": str(tmp_path / "missing-ca.pem")})

    with pytest.raises(ConfigurationError):
        await adapter.connect()

    assert adapter._connection_task is None
    assert adapter._worker_tasks == []
