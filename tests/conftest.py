"""
Test configuration and fixtures for IoMT Dongle tests.
"""
import os
import threading
from unittest.mock import MagicMock

import pytest

from iomt_dongle.config import DongleOptions
from iomt_dongle.data_models import DeviceInfo, DongleIdentity
from iomt_dongle.driver import Driver
from iomt_dongle.middleware import Middleware


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration file into a temporary directory."""
    def _write(text: str, name: str = "dongle.properties"):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def sample_options():
    """Options from the end-to-end scenario."""
    return DongleOptions({
        "device_port": "/dev/ttyUSB0",
        "broker": "ssl://host:8883",
        "qos": "1",
    })


@pytest.fixture
def identity():
    """Fixed identity so topics are predictable."""
    return DongleIdentity(dongle_id="dongle-0001", device_id="device-0001")


@pytest.fixture
def device_info(identity, sample_options):
    return DeviceInfo.from_options(identity, sample_options)


@pytest.fixture
def mock_middleware():
    """Create a mock middleware for testing."""
    middleware = MagicMock(spec=Middleware)
    middleware.publish_id.return_value = True
    return middleware


@pytest.fixture
def mock_driver():
    """Create a mock driver for testing."""
    return MagicMock(spec=Driver)


class FakeSerial:
    """Stand-in for serial.Serial that replays a list of lines."""

    def __init__(self, lines=None):
        self.lines = list(lines or [])
        self.closed = False
        self.drained = threading.Event()

    def readline(self):
        if self.closed:
            raise OSError("port closed")
        if self.lines:
            item = self.lines.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        self.drained.set()
        threading.Event().wait(0.01)
        return b""

    def close(self):
        self.closed = True


@pytest.fixture
def fake_serial():
    """Factory for FakeSerial instances."""
    return FakeSerial


@pytest.fixture
def mqtt_test_config():
    """Configuration for MQTT integration tests."""
    return {
        "broker": os.getenv("MQTT_TEST_BROKER", "localhost"),
        "port": int(os.getenv("MQTT_TEST_PORT", "1883")),
        "username": os.getenv("MQTT_TEST_USERNAME"),
        "password": os.getenv("MQTT_TEST_PASSWORD"),
    }


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on file location."""
    for item in items:
        # Mark tests in unit/ directory as unit tests
        if "unit" in item.path.parts:
            item.add_marker(pytest.mark.unit)
        # Mark tests in integration/ directory as integration tests
        elif "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)
