"""
Dongle Bridge Coordinator

Sequences startup of the broker link and the device link, and wires the
data path from driver messages to published envelopes.
"""

import logging
from typing import Callable, Mapping, Optional

from .data_models import DeviceInfo, DongleIdentity
from .driver import Driver, SerialLineDriver
from .envelope import EnvelopeCallback
from .errors import DriverStartError, MiddlewareStartError
from .middleware import Middleware, MqttDongle

MiddlewareFactory = Callable[[str], Middleware]
DriverFactory = Callable[[str, Mapping[str, str]], Driver]


class DongleBridge:
    """Bridge between one medical device and the MQTT broker"""

    def __init__(self,
                 identity: DongleIdentity,
                 device_info: DeviceInfo,
                 options: Mapping[str, str],
                 middleware_factory: MiddlewareFactory = MqttDongle,
                 driver_factory: DriverFactory = SerialLineDriver.from_options,
                 logger: Optional[logging.Logger] = None):
        self.identity = identity
        self.device_info = device_info
        self.options = options
        self._middleware_factory = middleware_factory
        self._driver_factory = driver_factory
        self.logger = logger or logging.getLogger(__name__)

        self.middleware: Optional[Middleware] = None
        self.driver: Optional[Driver] = None

    @property
    def dongle_id(self) -> str:
        return self.identity.dongle_id

    def start_middleware(self) -> Middleware:
        """Initialize the middleware, then connect to the broker.

        Must finish before start_driver() so readings always have a
        connected broker to go to.
        """
        self.logger.info(f"Starting middleware for dongle {self.dongle_id}...")
        try:
            middleware = self._middleware_factory(self.dongle_id)
            middleware.init(self.options)
            middleware.connect(None, None, None)
        except Exception as e:
            raise MiddlewareStartError(f"Failed to start MQTT client: {e}") from e

        self.middleware = middleware
        return middleware

    def start_driver(self, device_port: str) -> Driver:
        """Open the device, subscribe the data path, then register the device"""
        if self.middleware is None:
            raise DriverStartError("start_middleware() must succeed before start_driver()")

        self.logger.info(f"Starting driver on {device_port}...")
        callback = EnvelopeCallback(self.device_info.device_id, self.middleware, logger=self.logger)
        try:
            driver = self._driver_factory(device_port, self.options)
            self.driver = driver
            driver.subscribe(None, callback)
            # Readings arriving before this call are published for a device
            # the broker has not been told about yet.
            self.middleware.add_device(self.device_info)
        except Exception as e:
            raise DriverStartError(f"Failed to start driver: {e}") from e

        self.logger.info(f"Device {self.device_info.device_id} on {device_port} is streaming")
        return driver

    def stop_driver(self) -> None:
        """Release the device port"""
        driver, self.driver = self.driver, None
        if driver is not None:
            driver.close()
            self.logger.info("Driver stopped")
