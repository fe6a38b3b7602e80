from typing import Any, Dict

from .base import TransportAdapter
from .aws_iot import AwsIotAdapter
from .embedded import EmbeddedBrokerAdapter
from .mqtt import MQTTAdapter
from ..utils.logging import get_logger
from ..utils.exceptions import ConfigurationError

logger = get_logger(__name__)

TRANSPORT_BACKENDS = {
    "embedded": EmbeddedBrokerAdapter,
    "mqtt": MQTTAdapter,
    "aws_iot": AwsIotAdapter,
}


def create_transport(transport_config: Dict[str, Any]) -> TransportAdapter:
    """
    Build the single transport adapter for this process.

    transport_config is the `transport` section of the YAML config: the
    `backend` key picks the adapter and the section of the same name holds
    its settings.
    """
    backend = transport_config.get("backend", "embedded")
    adapter_class = TRANSPORT_BACKENDS.get(backend)
    if adapter_class is None:
        raise ConfigurationError(
            f"Unknown transport backend '{backend}', expected one of: {', '.join(TRANSPORT_BACKENDS)}"
        )

    settings = transport_config.get(backend) or {}
    if not isinstance(settings, dict):
        raise ConfigurationError(f"transport.{backend} must be a mapping")

    adapter = adapter_class(settings, handler_concurrency=transport_config.get("handler_concurrency", 4))
    logger.info(f"Using {backend} transport")
    return adapter
