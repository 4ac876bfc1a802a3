#!/usr/bin/env python3
"""
IoMT Dongle CLI

Command-line interface for running a dongle that streams one serial medical
device to the MQTT broker.
"""

import argparse
import logging
import os
import sys
import threading
from typing import Mapping, Optional

from .config import ConfigurationLoader
from .data_models import DeviceInfo, DongleIdentity
from .dongle import DongleBridge, DriverFactory, MiddlewareFactory
from .driver import SerialLineDriver
from .errors import ConfigurationError, DriverStartError, MiddlewareStartError
from .middleware import MqttDongle
from .shutdown import ShutdownCoordinator

EXIT_OK = 0
EXIT_FAILURE = -1

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO"):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="IoMT Dongle - stream a serial medical device to an MQTT broker"
    )
    parser.add_argument(
        "--config",
        default=os.getenv("DONGLE_CONFIG"),
        help="Configuration file (default: ./dongle.properties, then the bundled default)"
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=float(os.getenv("DONGLE_SHUTDOWN_TIMEOUT", "5")),
        help="Seconds to wait for the broker disconnect on exit (default: 5)"
    )
    return parser.parse_args(argv)


def run_dongle(options: Mapping[str, str],
               identity: Optional[DongleIdentity] = None,
               stop_event: Optional[threading.Event] = None,
               shutdown_timeout: float = 5.0,
               middleware_factory: MiddlewareFactory = MqttDongle,
               driver_factory: DriverFactory = SerialLineDriver.from_options) -> int:
    """Start the dongle and park until ``stop_event`` is set.

    Returns the process exit code.
    """
    identity = identity or DongleIdentity.generate(options)
    device_info = DeviceInfo.from_options(identity, options)
    logger.info(f"Dongle {identity.dongle_id}, device {identity.device_id} ({device_info.device_type})")

    dongle = DongleBridge(
        identity,
        device_info,
        options,
        middleware_factory=middleware_factory,
        driver_factory=driver_factory,
    )

    try:
        middleware = dongle.start_middleware()
    except MiddlewareStartError:
        logger.exception("Failed to start MQTT client!")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        # Signal handlers are not installed until a broker link exists
        logger.warning("Interrupted while connecting to the MQTT broker")
        return EXIT_FAILURE

    stop_event = stop_event or threading.Event()
    with ShutdownCoordinator(middleware, timeout=shutdown_timeout) as shutdown:
        shutdown.add_cleanup(dongle.stop_driver)
        if threading.current_thread() is threading.main_thread():
            shutdown.install_signal_handlers(stop_event)

        try:
            dongle.start_driver(options["device_port"])
        except DriverStartError:
            logger.exception("Failed to start driver!")
            return EXIT_FAILURE

        logger.info("Dongle running... Press Ctrl+C to stop")
        try:
            stop_event.wait()
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")

    logger.info("Dongle stopped")
    return EXIT_OK


def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    setup_logging(args.log_level)

    logger.info("Starting IoMT Dongle...")
    try:
        options = ConfigurationLoader(explicit_path=args.config).load()
    except ConfigurationError:
        logger.exception("Failed to load configuration!")
        return EXIT_FAILURE

    return run_dongle(options, shutdown_timeout=args.shutdown_timeout)


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
