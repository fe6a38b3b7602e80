# Configuration loading and validation
from typing import Dict, Any, List, Optional
from pathlib import Path
import traceback
import yaml
from pydantic import BaseModel, Field, ValidationError

from ..utils.exceptions import ConfigurationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SUBSCRIBE_TOPICS = [
    "devices/+/online",
    "devices/+/data",
    "manifolds/+/status",
    "manifolds/+/online",
    "manifolds/+/ack",
    "v3/+/devices/+/up",
    "v3/+/devices/+/join",
    "v3/+/devices/+/down/+",
]


class TimingConfig(BaseModel):
    presence_timeout: float = Field(15.0, gt=0, description="Seconds without traffic before a device is offline")
    presence_sweep_interval: float = Field(5.0, gt=0, description="Presence sweep period in seconds")
    command_ack_timeout: float = Field(30.0, gt=0, description="Seconds a command may wait for its ack")
    command_sweep_interval: float = Field(60.0, gt=0, description="Command expiry sweep period in seconds")


class StorageConfig(BaseModel):
    backend: str = Field("sqlite", pattern="^(sqlite|memory)$")
    path: str = Field("data/iot_fleet.db", description="SQLite database file")
    max_connections: int = Field(5, ge=1)


class TransportSelection(BaseModel):
    """Which adapter runs in this process. Fixed for the process lifetime."""
    backend: str = Field("embedded", pattern="^(embedded|mqtt|aws_iot)$")
    handler_concurrency: int = Field(4, ge=1, description="Concurrent inbound message handlers")
    subscribe_topics: List[str] = Field(default_factory=lambda: list(DEFAULT_SUBSCRIBE_TOPICS))


class LoRaWANConfig(BaseModel):
    tenant: str = Field("ttn", description="Network server tenant suffix in v3/{app}@{tenant} topics")
    webhook_secret: Optional[str] = Field(None, description="Expected X-Webhook-Secret header value")


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class FleetConfig(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    transport: TransportSelection = Field(default_factory=TransportSelection)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    lorawan: LoRaWANConfig = Field(default_factory=LoRaWANConfig)


class ConfigManager:
    """Manages configuration loading and validation"""

    REQUIRED_SECTIONS = ['api', 'transport', 'storage', 'logging']

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError:
            raise ConfigurationError(f"Error parsing configuration file: {traceback.format_exc()}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file is empty or incorrectly formatted")

        missing_sections = [section for section in ConfigManager.REQUIRED_SECTIONS if section not in config]
        if missing_sections:
            raise ConfigurationError(f"Missing required configuration sections: {', '.join(missing_sections)}")

        # Fail early on bad values instead of at first use
        ConfigManager.parse(config)
        return config

    @staticmethod
    def parse(config: Dict[str, Any]) -> FleetConfig:
        sections = {k: v for k, v in config.items() if k in FleetConfig.model_fields}
        # backend specific sections stay as plain dicts for the adapter factory
        if 'transport' in sections:
            sections['transport'] = {
                k: v for k, v in sections['transport'].items()
                if k in TransportSelection.model_fields
            }
        try:
            return FleetConfig(**sections)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")


DEFAULT_CONFIG = """
api:
  host: "0.0.0.0"
  port: 8000

transport:
  # embedded | mqtt | aws_iot
  backend: "embedded"
  handler_concurrency: 4
  embedded:
    host: "0.0.0.0"
    port: 1883
  mqtt:
    host: "localhost"
    port: 1883
    client_id: "iot-fleet"
  aws_iot:
    endpoint: "example-ats.iot.us-east-1.amazonaws.com"
    cert_path: "certs/device.pem.crt"
    key_path: "certs/private.pem.key"
    ca_path: "certs/AmazonRootCA1.pem"
    client_id: "iot-fleet"

timing:
  presence_timeout: 15
  presence_sweep_interval: 5
  command_ack_timeout: 30
  command_sweep_interval: 60

storage:
  backend: "sqlite"
  path: "data/iot_fleet.db"
  max_connections: 5

lorawan:
  tenant: "ttn"

logging:
  level: "INFO"
  file: "logs/iot_fleet.log"
  max_size: 10
  backup_count: 5
  format: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
"""


def create_default_config(config_path: Path) -> None:
    """Create default configuration file if it doesn't exist"""
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(DEFAULT_CONFIG)
        logger.info(f"Created default config at {config_path}")
