# In-process broker: devices connect straight to this service.
import asyncio
from typing import Any, Dict, Optional
import traceback
from pydantic import BaseModel, Field, ValidationError
from amqtt.broker import Broker

from .mqtt import MQTTAdapter
from ..utils.logging import get_logger
from ..utils.exceptions import ConfigurationError, TransportError

logger = get_logger(__name__)


class EmbeddedBrokerConfig(BaseModel):
    host: str = Field("0.0.0.0", description="Listener bind address")
    port: int = Field(1883, description="Listener port")
    client_id: str = Field("iot-fleet", description="Client ID of the local service client")
    reconnect_interval: float = Field(5.0, gt=0)
    connect_timeout: float = Field(15.0, gt=0)
    message_queue_size: int = Field(1000)
    subscribe_qos: int = Field(1, ge=0, le=2)
    publish_qos: int = Field(1, ge=0, le=2)


class EmbeddedBrokerAdapter(MQTTAdapter):
    """Starts an amqtt broker and attaches a loopback aiomqtt client to it"""

    def __init__(self, config: Dict[str, Any], handler_concurrency: int = 4):
        try:
            self.broker_config = EmbeddedBrokerConfig(**config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid embedded broker configuration: {str(e)}")

        loopback = "127.0.0.1" if self.broker_config.host in ("0.0.0.0", "") else self.broker_config.host
        super().__init__({
            "host": loopback,
            "port": self.broker_config.port,
            "client_id": self.broker_config.client_id,
            "reconnect_interval": self.broker_config.reconnect_interval,
            "connect_timeout": self.broker_config.connect_timeout,
            "message_queue_size": self.broker_config.message_queue_size,
            "subscribe_qos": self.broker_config.subscribe_qos,
            "publish_qos": self.broker_config.publish_qos,
        }, handler_concurrency=handler_concurrency)
        self.broker: Optional[Broker] = None

    @property
    def backend_name(self) -> str:
        return "embedded"

    def _broker_settings(self) -> Dict[str, Any]:
        return {
            "listeners": {
                "default": {
                    "type": "tcp",
                    "bind": f"{self.broker_config.host}:{self.broker_config.port}",
                },
            },
            "sys_interval": 0,
            "auth": {"allow-anonymous": True},
            "topic-check": {"enabled": False},
        }

    async def connect(self) -> None:
        try:
            self.broker = Broker(self._broker_settings())
            await self.broker.start()
            logger.info(f"Embedded MQTT broker listening on {self.broker_config.host}:{self.broker_config.port}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.broker = None
            raise TransportError(f"Failed to start embedded broker: {str(e)}")

        try:
            await super().connect()
        except (TransportError, ConfigurationError):
            await self._stop_broker()
            raise

    async def _stop_broker(self) -> None:
        if self.broker is None:
            return
        try:
            await self.broker.shutdown()
            logger.info("Embedded MQTT broker stopped")
        except Exception:
            logger.error(f"Error stopping embedded broker: {traceback.format_exc()}")
        finally:
            self.broker = None

    async def disconnect(self) -> None:
        await super().disconnect()
        await self._stop_broker()
