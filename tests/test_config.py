"""Tests for configuration from the environment."""

from colmi_ring_mcp.config import ConnectionConfig, RingConfig, SessionConfig
from colmi_ring_mcp.transport.base import SERVICE_UUID, DeviceFilter


def test_defaults():
    config = RingConfig.from_env({})
    assert config.session.command_timeout == 3.0
    assert config.session.max_retries == 2
    assert config.connection.max_reconnect_attempts == 5
    assert config.connection.backoff_max == 30.0
    assert config.device_filter == DeviceFilter()
    assert config.log_level == "INFO"


def test_from_env_overrides():
    config = RingConfig.from_env(
        {
            "COLMI_RING_ADDRESS": "aa:bb:cc:dd:ee:ff",
            "COLMI_RING_ADAPTER": "hci1",
            "COLMI_RING_COMMAND_TIMEOUT": "5",
            "COLMI_RING_MAX_RECONNECTS": "8",
            "COLMI_RING_SILENCE_TIMEOUT": "20",
            "COLMI_RING_LOG_LEVEL": "debug",
        }
    )
    assert config.device_filter.address == "aa:bb:cc:dd:ee:ff"
    assert config.connection.adapter == "hci1"
    assert config.session.command_timeout == 5.0
    assert config.connection.max_reconnect_attempts == 8
    assert config.connection.silence_timeout == 20.0
    assert config.log_level == "DEBUG"


def test_from_env_name_filter():
    config = RingConfig.from_env({"COLMI_RING_NAME": "R02_A1B2"})
    assert config.device_filter.matches("11:22:33:44:55:66", "R02_A1B2")
    assert not config.device_filter.matches("11:22:33:44:55:66", "R09_FFFF")


def test_invalid_numbers_fall_back_to_defaults():
    config = RingConfig.from_env(
        {
            "COLMI_RING_COMMAND_TIMEOUT": "soon",
            "COLMI_RING_MAX_RECONNECTS": "-2",
            "COLMI_RING_ADAPTER": "  ",
        }
    )
    assert config.session.command_timeout == SessionConfig().command_timeout
    assert config.connection.max_reconnect_attempts == ConnectionConfig().max_reconnect_attempts
    assert config.connection.adapter is None


def test_device_filter_matching():
    device_filter = DeviceFilter()
    assert device_filter.matches("x", "R02_1234")
    assert device_filter.matches("x", "R10_0001")
    assert device_filter.matches("x", "Colmi R02")
    assert device_filter.matches("x", None, [SERVICE_UUID.upper()])
    assert not device_filter.matches("x", "Oura", ["0000180d-0000-1000-8000-00805f9b34fb"])

    by_address = DeviceFilter(address="AA:BB:CC:DD:EE:FF")
    assert by_address.matches("aa:bb:cc:dd:ee:ff", None)
    assert not by_address.matches("11:22:33:44:55:66", "R02_1234")
