import asyncio
from typing import Dict, Any, List, Optional, Set
from pydantic import BaseModel, Field, ValidationError
import aiomqtt as mqtt
from aiomqtt import Will
import random
import ssl
import traceback

from .base import MessageHandler, Payload, PublishResult, TransportAdapter, encode_payload
from ..utils.logging import get_logger
from ..utils.exceptions import ConfigurationError, NotConnectedError, PublishFailedError, TransportError

logger = get_logger(__name__)

'''
usage Examples

adapter = MQTTAdapter({"host": "broker.local", "client_id": "iot-fleet"})
adapter.set_message_handler(router.handle_message)
await adapter.subscribe("manifolds/+/ack")
await adapter.connect()

result = await adapter.publish("manifolds/M1/command", {"commandId": "..."}, qos=1)
if not result.ok:
    ...

await adapter.disconnect()
'''


class MQTTConfig(BaseModel):
    """MQTT configuration model"""
    host: str = Field(..., description="MQTT broker hostname")
    port: int = Field(1883, description="MQTT broker port")
    username: Optional[str] = Field(None, description="MQTT username")
    password: Optional[str] = Field(None, description="MQTT password")
    keepalive: int = Field(60, description="Connection keepalive in seconds")
    client_id: str = Field("iot-fleet", description="MQTT client ID prefix")
    ssl: bool = Field(False, description="Enable SSL/TLS")
    reconnect_interval: float = Field(5.0, gt=0, description="Fixed delay between reconnection attempts")
    connect_timeout: float = Field(15.0, gt=0, description="Seconds connect() waits for the first session")
    message_queue_size: int = Field(1000, description="Maximum size of inbound message queue")
    ca_cert: Optional[str] = Field(None, description="Custom CA certificate")
    client_cert: Optional[str] = Field(None, description="Client certificate")
    client_key: Optional[str] = Field(None, description="Required if client_cert is set")
    verify_hostname: bool = Field(True, description="Verify broker's hostname")
    tls_version: Optional[str] = Field(None, description="TLSv1_2, TLSv1_3, etc.")
    subscribe_qos: int = Field(0, ge=0, le=2, description="qos for subscribe topics")
    publish_qos: int = Field(1, ge=0, le=2, description="qos for publish message")
    max_qos: int = Field(2, ge=0, le=2, description="Highest qos the broker accepts")
    clean_session: bool = Field(True, description="persistent sessions with clean_session=False")
    status_topic: bool = Field(True, description="Publish Online/Offline (LWT) on {client_id}/status")


class MQTTAdapter(TransportAdapter):
    """Remote broker backend, and the base for the embedded and AWS IoT variants."""

    def __init__(self, config: Dict[str, Any], handler_concurrency: int = 4):
        try:
            self.config = MQTTConfig(**config)
            self.config.keepalive = max(30, self.config.keepalive)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid MQTT configuration: {str(e)}")

        self.tls_version: Optional[ssl.TLSVersion] = None
        if self.config.tls_version:
            self.tls_version = getattr(ssl.TLSVersion, self.config.tls_version, None)
            if self.tls_version is None:
                raise ConfigurationError(f"Unknown TLS version: {self.config.tls_version}")

        self.client: Optional[mqtt.Client] = None
        self._tls_context: Optional[ssl.SSLContext] = None
        self.subscriptions: Set[str] = set()
        self.connected = asyncio.Event()
        self.handler_concurrency = max(1, handler_concurrency)
        self._message_handler: Optional[MessageHandler] = None
        self._stop_flag = asyncio.Event()
        self._connection_task: Optional[asyncio.Task] = None
        self._worker_tasks: List[asyncio.Task] = []
        self._message_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.message_queue_size)
        self._subscription_lock = asyncio.Lock()

    @property
    def backend_name(self) -> str:
        return "mqtt"

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.connected.is_set()

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def _create_tls_context(self) -> Optional[ssl.SSLContext]:
        """Create SSL context for MQTT connection based on config"""
        if not self.config.ssl:
            return None

        context = ssl.create_default_context()

        if self.config.ca_cert:
            context.load_verify_locations(cafile=self.config.ca_cert)

        if self.config.client_cert:
            if not self.config.client_key:
                raise ConfigurationError("Client key must be provided when using client certificate")
            context.load_cert_chain(
                certfile=self.config.client_cert,
                keyfile=self.config.client_key
            )

        if self.tls_version:
            context.minimum_version = self.tls_version

        context.check_hostname = self.config.verify_hostname
        return context

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs = dict(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.password,
            keepalive=self.config.keepalive,
            identifier=f"{self.config.client_id}_{random.randint(1000, 9999)}",
            clean_session=self.config.clean_session,
            tls_context=self._tls_context,
        )
        if self.config.status_topic:
            # Last Will and Testament
            kwargs["will"] = Will(
                topic=f"{self.config.client_id}/status",
                payload="Offline",
                qos=min(1, self.config.max_qos),
                retain=True
            )
        return kwargs

    async def _subscribe_all(self, client: mqtt.Client) -> None:
        """Subscribe to all stored topics on a fresh session"""
        async with self._subscription_lock:
            for topic in sorted(self.subscriptions):
                try:
                    await client.subscribe(topic, qos=self.config.subscribe_qos)
                    logger.info(f"Subscribed to topic: {topic}")
                except mqtt.MqttError as e:
                    logger.error(f"Failed to subscribe to topic {topic}: {str(e)}")

    async def _run_connection(self) -> None:
        """Hold a broker session, reconnecting after a fixed delay when it drops"""
        attempt = 0
        while not self._stop_flag.is_set():
            attempt += 1
            try:
                async with mqtt.Client(**self._client_kwargs()) as client:
                    self.client = client
                    self.connected.set()
                    attempt = 0
                    logger.info(f"Connected to {self.backend_name} broker {self.config.host}:{self.config.port}")
                    try:
                        if self.config.status_topic:
                            await client.publish(
                                f"{self.config.client_id}/status",
                                payload="Online",
                                qos=min(1, self.config.max_qos),
                                retain=True
                            )
                        await self._subscribe_all(client)
                        async for message in client.messages:
                            self._enqueue_message(str(message.topic), message.payload)
                    finally:
                        self.connected.clear()
                        self.client = None
                        logger.info(f"Disconnected from {self.backend_name} broker")
            except asyncio.CancelledError:
                raise
            except mqtt.MqttError as e:
                logger.warning(f"MQTT connection attempt {attempt} failed: {e}")
            except Exception:
                logger.error(f"Unexpected MQTT session error: {traceback.format_exc()}")

            if self._stop_flag.is_set():
                break
            logger.info(f"MQTT retry will happen after {self.config.reconnect_interval} seconds")
            await asyncio.sleep(self.config.reconnect_interval)

    def _enqueue_message(self, topic: str, payload: Any) -> None:
        if isinstance(payload, str):
            payload = payload.encode()
        elif payload is None:
            payload = b""
        elif not isinstance(payload, (bytes, bytearray)):
            payload = str(payload).encode()
        try:
            self._message_queue.put_nowait((topic, bytes(payload)))
        except asyncio.QueueFull:
            logger.warning(f"Message queue full, dropping message on {topic}")

    async def _handler_worker(self, worker_id: int) -> None:
        """Drain inbound messages; several workers run concurrently"""
        while True:
            topic, payload = await self._message_queue.get()
            try:
                if self._message_handler:
                    await self._message_handler(topic, payload)
                else:
                    logger.debug(f"No handler set, dropping message on {topic}")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error(f"Error in message handler {worker_id} for topic {topic}: {traceback.format_exc()}")
            finally:
                self._message_queue.task_done()

    async def connect(self) -> None:
        """Start the session loop and wait for the first connection"""
        # bad certificates are a configuration problem, not something to retry
        try:
            self._tls_context = self._create_tls_context()
        except (ssl.SSLError, OSError) as e:
            raise ConfigurationError(f"Invalid TLS setup for {self.backend_name}: {str(e)}")

        self._stop_flag.clear()
        self._worker_tasks = [
            asyncio.create_task(self._handler_worker(i)) for i in range(self.handler_concurrency)
        ]
        self._connection_task = asyncio.create_task(self._run_connection())
        try:
            await asyncio.wait_for(self.connected.wait(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise NotConnectedError(
                f"{self.backend_name} connection timeout after {self.config.connect_timeout} seconds"
            )

    async def disconnect(self) -> None:
        """Stop the session loop and the handler workers"""
        self._stop_flag.set()
        tasks = [t for t in [self._connection_task, *self._worker_tasks] if t]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.error(f"Error stopping MQTT task: {traceback.format_exc()}")
        self._connection_task = None
        self._worker_tasks = []
        self.connected.clear()
        self.client = None
        logger.info(f"{self.backend_name} adapter stopped")

    async def subscribe(self, topic_pattern: str) -> None:
        """Remember the pattern and subscribe now if a session is up"""
        async with self._subscription_lock:
            self.subscriptions.add(topic_pattern)
            client = self.client
            if client and self.connected.is_set():
                try:
                    await client.subscribe(topic_pattern, qos=self.config.subscribe_qos)
                    logger.info(f"Subscribed to topic: {topic_pattern}")
                except mqtt.MqttError as e:
                    raise TransportError(f"Failed to subscribe to topic {topic_pattern}: {str(e)}")

    async def publish(self, topic: str, payload: Payload, qos: Optional[int] = None,
                      retain: bool = False) -> PublishResult:
        """Publish once; fail fast when disconnected"""
        qos = self.config.publish_qos if qos is None else qos
        qos = min(qos, self.config.max_qos)
        client = self.client
        if client is None or not self.connected.is_set():
            logger.warning(f"Cannot publish to {topic}: not connected")
            return PublishResult.failure(topic, NotConnectedError(f"Not connected to {self.backend_name} broker"))
        try:
            await client.publish(topic, payload=encode_payload(payload), qos=qos, retain=retain)
            logger.debug(f"Published to {topic}")
            return PublishResult.success(topic)
        except Exception as e:
            logger.error(f"Failed to publish to {topic}: {str(e)}")
            return PublishResult.failure(topic, PublishFailedError(f"Publish to {topic} failed: {str(e)}"))
