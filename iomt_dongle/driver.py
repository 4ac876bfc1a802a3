"""
Serial device driver for the IoMT dongle.

The driver owns the serial port and its read loop. Each line the device
sends is handed to the subscribed callback from a single reader thread, in
the order it was read.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Callable, Mapping, Optional

import serial

from .config import option_float, option_int
from .data_models import BinaryMessage, DriverMessage, TextMessage
from .errors import DriverStartError

logger = logging.getLogger(__name__)

DriverCallback = Callable[[DriverMessage], None]

INITIAL_BACKOFF = 0.2


class Driver(ABC):
    """Push-based source of device messages"""

    @abstractmethod
    def subscribe(self, filter: Optional[str], callback: DriverCallback) -> None:
        """Start delivering messages to ``callback``"""

    @abstractmethod
    def close(self) -> None:
        """Stop delivery and release the device"""


class SerialLineDriver(Driver):
    """Line-oriented serial driver (e.g. Masimo Rad-8 ASCII output)"""

    def __init__(self, port: str, baudrate: int = 9600, bytesize: int = 8,
                 parity: str = "N", stopbits: float = 1, read_timeout: float = 1.0,
                 encoding: str = "ascii", max_backoff: float = 5.0):
        self.port = port
        self.baudrate = baudrate
        self.bytesize = bytesize
        self.parity = parity
        self.stopbits = stopbits
        self.read_timeout = read_timeout
        self.encoding = encoding
        self.max_backoff = max_backoff

        self._serial: Optional[serial.Serial] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._callback: Optional[DriverCallback] = None
        self._pattern: Optional[re.Pattern] = None

    @classmethod
    def from_options(cls, port: str, options: Mapping[str, str]) -> "SerialLineDriver":
        return cls(
            port,
            baudrate=option_int(options, "baud_rate", 9600),
            read_timeout=option_float(options, "read_timeout", 1.0),
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, filter: Optional[str], callback: DriverCallback) -> None:
        """Open the port and start the reader thread.

        Args:
            filter: Optional regular expression; text lines that do not
                match are skipped
            callback: Called with a TextMessage or BinaryMessage per line

        Raises:
            DriverStartError: If the port cannot be opened or the driver is
                already subscribed
        """
        if self._thread is not None:
            raise DriverStartError(f"Driver for {self.port} is already subscribed")

        try:
            self._pattern = re.compile(filter) if filter else None
        except re.error as e:
            raise DriverStartError(f"Invalid message filter {filter!r}: {e}") from e

        self._callback = callback
        self._serial = self._open()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._read_loop, name=f"serial-reader-{self.port}", daemon=True
        )
        self._thread.start()
        logger.info(f"Subscribed to device on {self.port} at {self.baudrate} baud")

    def close(self) -> None:
        """Stop the reader thread and close the port"""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.read_timeout + 1.0)
        self._thread = None
        self._close_port()

    def _open(self) -> serial.Serial:
        try:
            return serial.Serial(
                self.port,
                self.baudrate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=self.read_timeout,
            )
        except (serial.SerialException, ValueError, OSError) as e:
            raise DriverStartError(f"Cannot open serial port {self.port}: {e}") from e

    def _close_port(self) -> None:
        port, self._serial = self._serial, None
        if port is None:
            return
        try:
            port.close()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Error closing {self.port}: {e}")

    def _read_loop(self) -> None:
        backoff = INITIAL_BACKOFF
        while not self._stop.is_set():
            if self._serial is None:
                try:
                    self._serial = self._open()
                except DriverStartError as e:
                    logger.warning(f"{e}; retrying in {backoff:.1f}s")
                    self._stop.wait(backoff)
                    backoff = min(backoff * 2.0, self.max_backoff)
                    continue
                logger.info(f"Reopened serial port {self.port}")

            try:
                raw = self._serial.readline()
            except (serial.SerialException, OSError, AttributeError, TypeError) as e:
                # close() from another thread can leave pyserial half torn down
                if self._stop.is_set():
                    break
                logger.warning(f"Serial read error on {self.port}: {e}; reopening in {backoff:.1f}s")
                self._close_port()
                self._stop.wait(backoff)
                backoff = min(backoff * 2.0, self.max_backoff)
                continue

            backoff = INITIAL_BACKOFF
            if raw:
                self._dispatch(raw)

        self._close_port()
        logger.info(f"Serial reader for {self.port} stopped")

    def _dispatch(self, raw: bytes) -> None:
        line = raw.rstrip(b"\r\n")
        if not line:
            return

        try:
            text = line.decode(self.encoding)
        except UnicodeDecodeError:
            message: DriverMessage = BinaryMessage(line)
        else:
            if self._pattern is not None and not self._pattern.search(text):
                return
            message = TextMessage(text)

        try:
            self._callback(message)
        except Exception as e:
            logger.error(f"Error in driver callback for {self.port}: {e}")
