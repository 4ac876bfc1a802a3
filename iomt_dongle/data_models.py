"""
Data models for the IoMT dongle bridge.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Union


@dataclass(frozen=True)
class DongleIdentity:
    """Identifiers that scope every topic this dongle publishes to"""
    dongle_id: str
    device_id: str

    @classmethod
    def generate(cls, options: Mapping[str, str]) -> "DongleIdentity":
        """Use configured ids when present, otherwise create fresh UUIDs.

        Call once per process; the result is stable for the process lifetime.
        """
        return cls(
            dongle_id=options.get("dongle_id") or str(uuid.uuid4()),
            device_id=options.get("device_id") or str(uuid.uuid4()),
        )


@dataclass(frozen=True)
class DeviceInfo:
    """Descriptor of the medical device connected to the dongle"""
    device_id: str
    device_type: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_options(cls, identity: DongleIdentity, options: Mapping[str, str]) -> "DeviceInfo":
        metadata = {"dongle_id": identity.dongle_id}
        if options.get("device_port"):
            metadata["device_port"] = options["device_port"]
        return cls(
            device_id=identity.device_id,
            device_type=options.get("device_type") or "unknown",
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class DataEnvelope:
    """Timestamped wrapper published for each device reading"""
    time: str
    epoch: int
    data: str

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "epoch": self.epoch, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class TextMessage:
    """A decoded line of text from the device"""
    payload: str


@dataclass(frozen=True)
class BinaryMessage:
    """Raw bytes from the device that could not be decoded as text"""
    payload: bytes


DriverMessage = Union[TextMessage, BinaryMessage]


class ConnectionState(str, Enum):
    """State of the broker link as tracked by the middleware"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
