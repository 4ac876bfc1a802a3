"""
Data path from device messages to published envelopes.
"""

import logging
from datetime import tzinfo
from typing import Callable, Optional

from .clock import epoch_millis, format_millis
from .data_models import BinaryMessage, DataEnvelope, DriverMessage, TextMessage


def build_envelope(text: str, now_ms: int, tz: Optional[tzinfo] = None) -> DataEnvelope:
    """Wrap a device reading with the instant it was received.

    Args:
        text: Raw reading, kept verbatim
        now_ms: Receive instant in epoch milliseconds
        tz: Zone for the formatted time (defaults to local time)
    """
    return DataEnvelope(time=format_millis(now_ms, tz), epoch=now_ms, data=text)


class EnvelopeCallback:
    """Driver callback that publishes each text reading for one device.

    Expects the driver to call it from a single delivery thread; it keeps
    no state of its own between calls.
    """

    def __init__(self, device_id: str, middleware,
                 clock: Callable[[], int] = epoch_millis,
                 tz: Optional[tzinfo] = None,
                 logger: Optional[logging.Logger] = None):
        self.device_id = device_id
        self.middleware = middleware
        self.clock = clock
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, message: DriverMessage) -> None:
        if isinstance(message, TextMessage):
            self._handle_text(message.payload)
        elif isinstance(message, BinaryMessage):
            # Binary frames are not published
            self.logger.debug(f"Dropping {len(message.payload)} byte binary message from {self.device_id}")
        else:
            raise TypeError(f"Unsupported driver message: {type(message).__name__}")

    def _handle_text(self, text: str) -> None:
        envelope = build_envelope(text, self.clock(), self.tz)
        self.middleware.publish_id(self.device_id, envelope.to_json(), None)
        self.logger.debug(f"Published reading for {self.device_id} at {envelope.time}")
