"""
Shutdown coordination for the dongle process.

Whatever ends the process (a signal, Ctrl+C, a startup failure after the
broker link was opened, or a normal return), the broker connection is
released exactly once, with a bounded wait.
"""

import logging
import signal
import threading
from typing import Callable, Dict, List, Optional

from .middleware import Middleware

TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGHUP") if hasattr(signal, name)
)


class ShutdownCoordinator:
    """Releases the middleware connection once on any exit path.

    Use as a context manager around the part of the process that owns the
    connection:

        with ShutdownCoordinator(middleware) as shutdown:
            shutdown.install_signal_handlers(stop_event)
            stop_event.wait()
    """

    def __init__(self, middleware: Middleware, timeout: float = 5.0,
                 logger: Optional[logging.Logger] = None):
        self.middleware = middleware
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._started = False
        self._done = threading.Event()
        self._cleanups: List[Callable[[], None]] = []
        self._previous_handlers: Dict[int, object] = {}

    @property
    def is_shut_down(self) -> bool:
        return self._done.is_set()

    def __enter__(self) -> "ShutdownCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.shutdown()
        finally:
            self.restore_signal_handlers()
        return False

    def add_cleanup(self, action: Callable[[], None]) -> None:
        """Run ``action`` before the middleware is disconnected"""
        self._cleanups.append(action)

    def install_signal_handlers(self, stop_event: threading.Event) -> None:
        """Make termination signals wake the parked main thread"""
        def _handle(signum, frame):
            self.logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
            stop_event.set()

        for signum in TERMINATION_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _handle)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def shutdown(self) -> bool:
        """Disconnect the middleware if that has not happened yet.

        Safe to call repeatedly and from several threads; only the first
        call does the work, later calls wait for it up to the timeout.

        Returns:
            True if the teardown finished within the timeout
        """
        with self._lock:
            first = not self._started
            self._started = True

        if not first:
            return self._done.wait(self.timeout)

        self.logger.info("Shutting down dongle...")
        for action in reversed(self._cleanups):
            try:
                action()
            except Exception as e:
                self.logger.error(f"Error during cleanup: {e}")

        worker = threading.Thread(target=self._disconnect, name="middleware-disconnect", daemon=True)
        worker.start()
        worker.join(self.timeout)
        if worker.is_alive():
            self.logger.warning(f"Middleware did not disconnect within {self.timeout}s")
            return False
        return True

    def _disconnect(self):
        try:
            self.middleware.disconnect()
            self.logger.info("Middleware disconnected")
        except Exception as e:
            self.logger.error(f"Error disconnecting middleware: {e}")
        finally:
            self._done.set()
