# AWS IoT Core over mutual TLS MQTT.
from pathlib import Path
from typing import Any, Dict
from pydantic import BaseModel, Field, ValidationError

from .mqtt import MQTTAdapter
from ..utils.logging import get_logger
from ..utils.exceptions import ConfigurationError

logger = get_logger(__name__)

# AWS IoT Core does not support QoS 2
AWS_MAX_QOS = 1


class AwsIotConfig(BaseModel):
    endpoint: str = Field(..., description="Account specific ATS endpoint")
    port: int = Field(8883)
    cert_path: str = Field(..., description="Device certificate (PEM)")
    key_path: str = Field(..., description="Device private key (PEM)")
    ca_path: str = Field(..., description="Amazon root CA (PEM)")
    client_id: str = Field("iot-fleet", description="Thing name / client ID")
    keepalive: int = Field(30)
    reconnect_interval: float = Field(5.0, gt=0)
    connect_timeout: float = Field(15.0, gt=0)
    message_queue_size: int = Field(1000)


class AwsIotAdapter(MQTTAdapter):

    def __init__(self, config: Dict[str, Any], handler_concurrency: int = 4):
        try:
            self.aws_config = AwsIotConfig(**config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid AWS IoT configuration: {str(e)}")

        missing = [
            name for name in ("cert_path", "key_path", "ca_path")
            if not Path(getattr(self.aws_config, name)).is_file()
        ]
        if missing:
            raise ConfigurationError(
                f"AWS IoT certificate files not found: "
                f"{', '.join(f'{m}={getattr(self.aws_config, m)}' for m in missing)}"
            )

        super().__init__({
            "host": self.aws_config.endpoint,
            "port": self.aws_config.port,
            "client_id": self.aws_config.client_id,
            "keepalive": self.aws_config.keepalive,
            "ssl": True,
            "ca_cert": self.aws_config.ca_path,
            "client_cert": self.aws_config.cert_path,
            "client_key": self.aws_config.key_path,
            "tls_version": "TLSv1_2",
            "clean_session": False,
            "reconnect_interval": self.aws_config.reconnect_interval,
            "connect_timeout": self.aws_config.connect_timeout,
            "message_queue_size": self.aws_config.message_queue_size,
            "subscribe_qos": AWS_MAX_QOS,
            "publish_qos": AWS_MAX_QOS,
            "max_qos": AWS_MAX_QOS,
        }, handler_concurrency=handler_concurrency)
        # AWS IoT rejects keepalive outside 30..1200
        self.config.keepalive = min(1200, max(30, self.aws_config.keepalive))
        logger.info(f"AWS IoT endpoint {self.aws_config.endpoint}:{self.aws_config.port} as {self.aws_config.client_id}")

    @property
    def backend_name(self) -> str:
        return "aws_iot"
