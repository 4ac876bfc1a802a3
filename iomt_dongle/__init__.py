"""
IoMT Dongle

A bridge process that streams readings from one serial medical device to an
MQTT broker, wrapping each reading in a timestamped envelope.
"""

__version__ = "1.0.0"
__author__ = "IoMT Dongle Team"

from .data_models import (
    DongleIdentity,
    DeviceInfo,
    DataEnvelope,
    TextMessage,
    BinaryMessage,
    ConnectionState
)
from .config import ConfigurationLoader, DongleOptions
from .envelope import EnvelopeCallback, build_envelope
from .middleware import Middleware, MqttDongle
from .driver import Driver, SerialLineDriver
from .dongle import DongleBridge
from .shutdown import ShutdownCoordinator

__all__ = [
    "DongleBridge",
    "ConfigurationLoader",
    "DongleOptions",
    "Middleware",
    "MqttDongle",
    "Driver",
    "SerialLineDriver",
    "EnvelopeCallback",
    "build_envelope",
    "ShutdownCoordinator",
    "DongleIdentity",
    "DeviceInfo",
    "DataEnvelope",
    "TextMessage",
    "BinaryMessage",
    "ConnectionState"
]
