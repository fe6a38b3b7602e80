import pytest
import yaml

from iot_fleet.core.config import DEFAULT_SUBSCRIBE_TOPICS, ConfigManager, create_default_config
from iot_fleet.utils.exceptions import ConfigurationError


def test_default_config_is_valid(tmp_path):
    config_path = tmp_path / "config" / "iot_fleet.yml"
    create_default_config(config_path)

    raw = ConfigManager.load_config(str(config_path))
    config = ConfigManager.parse(raw)

    assert config.transport.backend == "embedded"
    assert config.transport.subscribe_topics == DEFAULT_SUBSCRIBE_TOPICS
    assert config.timing.presence_timeout == 15
    assert config.timing.command_ack_timeout == 30
    assert config.timing.command_sweep_interval == 60
    assert config.lorawan.tenant == "ttn"
    # backend sections stay available for the adapter factory
    assert raw["transport"]["aws_iot"]["endpoint"]


def test_existing_config_is_not_overwritten(tmp_path):
    config_path = tmp_path / "iot_fleet.yml"
    config_path.write_text("api: {}\n")

    create_default_config(config_path)

    assert config_path.read_text() == "api: {}\n"


def test_missing_sections_are_reported(tmp_path):
    config_path = tmp_path / "iot_fleet.yml"
    config_path.write_text(yaml.safe_dump({"api": {"port": 8000}, "logging": {}}))

    with pytest.raises(ConfigurationError, match="transport, storage"):
        ConfigManager.load_config(str(config_path))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        ConfigManager.load_config(str(tmp_path / "nope.yml"))


def test_invalid_values_fail_early(tmp_path):
    config_path = tmp_path / "iot_fleet.yml"
    config_path.write_text(yaml.safe_dump({
        "api": {}, "storage": {}, "logging": {},
        "transport": {"backend": "zigbee"},
    }))

    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        ConfigManager.load_config(str(config_path))


def test_empty_file(tmp_path):
    config_path = tmp_path / "iot_fleet.yml"
    config_path.write_text("")

    with pytest.raises(ConfigurationError):
        ConfigManager.load_config(str(config_path))
