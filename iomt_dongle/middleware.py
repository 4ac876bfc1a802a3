"""
MQTT middleware for the IoMT dongle.

Owns the broker connection: TLS, credentials, keep-alive, the fail-over
broker list, QoS and background reconnection. The orchestrator only sees
calls that either return or raise.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .clock import epoch_millis, uptime_seconds
from .config import option_float, option_int
from .data_models import ConnectionState, DeviceInfo
from .errors import ConfigurationInvalidError, MiddlewareConnectError, MiddlewareError

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = "DEFAULT"
DEFAULT_BROKER = "tcp://localhost:1883"
DEFAULT_PORTS = {"tcp": 1883, "mqtt": 1883, "ssl": 8883, "mqtts": 8883, "ws": 80, "wss": 443}
TLS_SCHEMES = ("ssl", "mqtts", "wss")
WEBSOCKET_SCHEMES = ("ws", "wss")
SHUTDOWN_PUBLISH_TIMEOUT = 2.0


@dataclass(frozen=True)
class BrokerEndpoint:
    """One broker address from the ``broker``/``brokers`` options"""
    scheme: str
    host: str
    port: int

    @classmethod
    def parse(cls, uri: str) -> "BrokerEndpoint":
        """Parse ``scheme://host:port``; a bare ``host[:port]`` means tcp"""
        text = uri.strip()
        if "://" not in text:
            text = f"tcp://{text}"
        parts = urlsplit(text)
        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ConfigurationInvalidError(f"Unsupported broker scheme in {uri!r}")
        try:
            port = parts.port or DEFAULT_PORTS[scheme]
        except ValueError as e:
            raise ConfigurationInvalidError(f"Invalid broker port in {uri!r}") from e
        if not parts.hostname:
            raise ConfigurationInvalidError(f"Missing broker host in {uri!r}")
        return cls(scheme=scheme, host=parts.hostname, port=port)

    @property
    def tls(self) -> bool:
        return self.scheme in TLS_SCHEMES

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in WEBSOCKET_SCHEMES else "tcp"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


class Middleware(ABC):
    """Broker-side capabilities the dongle depends on"""

    @abstractmethod
    def init(self, options: Mapping[str, str]) -> None:
        """Apply configuration; no network activity"""

    @abstractmethod
    def connect(self, host: Optional[str] = None, port: Optional[int] = None,
                credentials: Optional[Tuple[str, str]] = None) -> None:
        """Connect to a broker, blocking until connected or failed"""

    @abstractmethod
    def add_device(self, device_info: DeviceInfo) -> None:
        """Announce a device attached to this dongle"""

    @abstractmethod
    def publish_id(self, device_id: str, payload: str, qos: Optional[int] = None) -> bool:
        """Publish a payload on the data topic of a device"""

    @abstractmethod
    def disconnect(self) -> None:
        """Release the broker connection"""


class MqttDongle(Middleware):
    """paho-mqtt implementation of the dongle middleware"""

    def __init__(self, dongle_id: str):
        self.dongle_id = dongle_id

        self.project_name = DEFAULT_PROJECT
        self.endpoints: List[BrokerEndpoint] = []
        self.connection_timeout = 30.0
        self.retry_interval = 5.0
        self.alive_interval = 60
        self.qos = 1
        self.report_interval = 60.0
        self.publish_timeout = 0.0
        self.username: Optional[str] = None
        self.password: Optional[str] = None
        self.ca_cert_file: Optional[str] = None
        self.client_cert_file: Optional[str] = None
        self.client_key_file: Optional[str] = None
        self.key_password: Optional[str] = None

        self._initialized = False
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._connected_event = threading.Event()
        self._last_connect_error: Optional[str] = None
        self._client: Optional[mqtt.Client] = None
        self._active_endpoints: List[BrokerEndpoint] = []
        self._endpoint_index = 0
        self._ever_connected = False
        self._closing = False
        self._started_at: Optional[float] = None
        self._devices: Dict[str, DeviceInfo] = {}
        self._stop_reports = threading.Event()
        self._report_thread: Optional[threading.Thread] = None

    # -- configuration -----------------------------------------------------

    def init(self, options: Mapping[str, str]) -> None:
        self.project_name = options.get("project_name") or DEFAULT_PROJECT

        primary = options.get("broker") or DEFAULT_BROKER
        failover = [uri.strip() for uri in (options.get("brokers") or "").split(",") if uri.strip()]
        self.endpoints = [BrokerEndpoint.parse(uri) for uri in [primary] + failover]

        self.connection_timeout = option_float(options, "connection_timeout", 30.0)
        self.retry_interval = option_float(options, "retry_interval", 5.0)
        self.alive_interval = option_int(options, "alive_interval", 60)
        self.report_interval = option_float(options, "report_interval", 60.0)
        self.publish_timeout = option_float(options, "publish_timeout", 0.0)
        self.qos = option_int(options, "qos", 1)
        if self.qos not in (0, 1, 2):
            raise ConfigurationInvalidError(f"qos must be 0, 1 or 2, got {self.qos}")

        self.username = options.get("username") or None
        self.password = options.get("password") or None
        self.ca_cert_file = options.get("ca_cert_file") or None
        self.client_cert_file = options.get("client_cert_file") or None
        self.client_key_file = options.get("client_key_file") or None
        self.key_password = options.get("key_password") or None
        for path in (self.ca_cert_file, self.client_cert_file, self.client_key_file):
            if path and not Path(path).is_file():
                raise ConfigurationInvalidError(f"TLS file not found: {path}")

        self._initialized = True
        logger.info(
            f"Dongle {self.dongle_id} initialized: project {self.project_name}, "
            f"{len(self.endpoints)} broker(s), QoS {self.qos}"
        )

    # -- topics ------------------------------------------------------------

    def data_topic(self, device_id: str) -> str:
        return f"{self.project_name}/data/{self.dongle_id}/{device_id}"

    def device_topic(self, device_id: str) -> str:
        return f"{self.project_name}/devices/{self.dongle_id}/{device_id}"

    @property
    def status_topic(self) -> str:
        return f"{self.project_name}/status/{self.dongle_id}"

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState):
        with self._lock:
            previous, self._state = self._state, state
        if previous is not state:
            logger.debug(f"Broker link {previous.value} -> {state.value}")

    # -- connection --------------------------------------------------------

    def connect(self, host: Optional[str] = None, port: Optional[int] = None,
                credentials: Optional[Tuple[str, str]] = None) -> None:
        """Connect to the first broker that accepts the dongle.

        Tries the primary broker and then each fail-over broker, waiting up
        to ``connection_timeout`` seconds for each. An override host replaces
        the configured list.

        Raises:
            MiddlewareError: If init() was not called or already connected
            MiddlewareConnectError: If every broker failed
        """
        if not self._initialized:
            raise MiddlewareError("init() must be called before connect()")
        if self._client is not None:
            raise MiddlewareError("Dongle is already connected")

        if credentials is not None:
            self.username, self.password = credentials

        candidates = list(self.endpoints)
        if host:
            candidates = [replace(self.endpoints[0], host=host, port=port or self.endpoints[0].port)]

        failures = []
        for index, endpoint in enumerate(candidates):
            self._set_state(ConnectionState.CONNECTING)
            self._connected_event.clear()
            self._last_connect_error = None

            client = self._create_client(endpoint)
            logger.info(f"Connecting to MQTT broker at {endpoint}")
            try:
                client.connect(endpoint.host, endpoint.port, keepalive=self.alive_interval)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to connect to {endpoint}: {e}")
                failures.append(f"{endpoint}: {e}")
                continue

            client.loop_start()
            if self._connected_event.wait(self.connection_timeout) and self.state is ConnectionState.CONNECTED:
                with self._lock:
                    self._client = client
                    self._active_endpoints = candidates
                    self._endpoint_index = index
                    self._ever_connected = True
                    self._started_at = time.monotonic()
                self._start_reports()
                return

            reason = self._last_connect_error or f"no answer within {self.connection_timeout}s"
            logger.warning(f"Broker {endpoint} did not accept the connection: {reason}")
            failures.append(f"{endpoint}: {reason}")
            client.disconnect()
            client.loop_stop()

        self._set_state(ConnectionState.DISCONNECTED)
        raise MiddlewareConnectError("Failed to connect to any broker - " + "; ".join(failures))

    def _create_client(self, endpoint: BrokerEndpoint) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.dongle_id,
            transport=endpoint.transport,
        )
        if self.username:
            client.username_pw_set(self.username, self.password)
        if endpoint.tls:
            client.tls_set(
                ca_certs=self.ca_cert_file,
                certfile=self.client_cert_file,
                keyfile=self.client_key_file,
                keyfile_password=self.key_password,
            )

        client.will_set(self.status_topic, self._status_payload(online=False), qos=1, retain=True)
        min_delay = max(1, int(self.retry_interval))
        client.reconnect_delay_set(min_delay=min_delay, max_delay=min_delay * 12)
        client.connect_timeout = self.connection_timeout
        client.enable_logger(logging.getLogger(f"{__name__}.paho"))

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        return client

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """MQTT connection callback"""
        if reason_code.is_failure:
            self._last_connect_error = str(reason_code)
            logger.error(f"Connection refused by broker: {reason_code}")
            self._connected_event.set()
            return

        reconnected = self._ever_connected
        self._set_state(ConnectionState.CONNECTED)
        self._connected_event.set()
        if reconnected:
            logger.info("Reconnected to MQTT broker")
            self._publish_status(client)
        else:
            logger.info("Connected to MQTT broker")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """MQTT disconnection callback"""
        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if client is not self._client:
            return

        self._set_state(ConnectionState.RETRYING)
        logger.warning(f"Lost connection to MQTT broker ({reason_code}), will auto-reconnect")
        self._rotate_endpoint(client)

    def _on_connect_fail(self, client, userdata):
        """Reconnect attempt could not reach the broker"""
        if self._closing or client is not self._client:
            return
        if self.state is not ConnectionState.RETRYING:
            return

        logger.warning("Reconnect to MQTT broker failed")
        self._rotate_endpoint(client)

    def _rotate_endpoint(self, client):
        """Point the next reconnect at the next compatible fail-over broker"""
        with self._lock:
            current = self._active_endpoints[self._endpoint_index]
            compatible = [
                i for i, endpoint in enumerate(self._active_endpoints)
                if endpoint.transport == current.transport and endpoint.tls == current.tls
            ]
            if len(compatible) < 2:
                return
            position = compatible.index(self._endpoint_index)
            self._endpoint_index = compatible[(position + 1) % len(compatible)]
            target = self._active_endpoints[self._endpoint_index]

        logger.info(f"Failing over to broker {target}")
        client.connect_async(target.host, target.port, keepalive=self.alive_interval)

    # -- publishing --------------------------------------------------------

    def _require_client(self) -> mqtt.Client:
        client = self._client
        if client is None or not self._ever_connected:
            raise MiddlewareError("Dongle has never connected to a broker")
        if self._closing:
            raise MiddlewareError("Dongle is disconnecting")
        return client

    def add_device(self, device_info: DeviceInfo) -> None:
        client = self._require_client()
        with self._lock:
            self._devices[device_info.device_id] = device_info

        client.publish(
            self.device_topic(device_info.device_id),
            json.dumps(device_info.to_dict()),
            qos=1,
            retain=True,
        )
        logger.info(f"Registered device {device_info.device_id} ({device_info.device_type})")

    def publish_id(self, device_id: str, payload: str, qos: Optional[int] = None) -> bool:
        """Publish a payload on the data topic of a device.

        Returns:
            True if paho accepted or queued the message, False if it was
            dropped while the broker link is down

        Raises:
            MiddlewareError: If the dongle never connected
        """
        client = self._require_client()
        qos = self.qos if qos is None else qos
        topic = self.data_topic(device_id)

        info = client.publish(topic, payload, qos=qos)
        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            self._wait_for_delivery(info, qos, topic)
            return True
        if info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0:
            logger.debug(f"Broker link down, message on {topic} queued for redelivery")
            return True

        logger.warning(f"Message on {topic} dropped: {mqtt.error_string(info.rc)}")
        return False

    def _wait_for_delivery(self, info, qos: int, topic: str):
        if self.publish_timeout <= 0 or qos == 0:
            return
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Could not confirm delivery on {topic}: {e}")
            return
        if not info.is_published():
            logger.warning(f"Delivery on {topic} not confirmed within {self.publish_timeout}s")

    # -- status reports ----------------------------------------------------

    def _status_payload(self, online: bool) -> str:
        with self._lock:
            devices = sorted(self._devices)
            started_at = self._started_at
            state = self._state
        return json.dumps({
            "dongle_id": self.dongle_id,
            "online": online,
            "state": state.value if online else ConnectionState.DISCONNECTED.value,
            "devices": devices,
            "uptime": uptime_seconds(started_at) if started_at is not None else 0,
            "timestamp": epoch_millis(),
        })

    def _publish_status(self, client, online: bool = True):
        return client.publish(self.status_topic, self._status_payload(online), qos=1, retain=True)

    def _start_reports(self):
        self._publish_status(self._client)
        if self.report_interval <= 0:
            return
        self._stop_reports.clear()
        self._report_thread = threading.Thread(
            target=self._report_loop, name=f"status-report-{self.dongle_id}", daemon=True
        )
        self._report_thread.start()

    def _report_loop(self):
        """Periodically publish the dongle status"""
        while not self._stop_reports.wait(self.report_interval):
            try:
                if self.is_connected:
                    self._publish_status(self._client)
            except Exception as e:
                logger.error(f"Error in status report: {e}")

    # -- shutdown ----------------------------------------------------------

    def disconnect(self) -> None:
        """Publish an offline status and close the broker connection"""
        with self._lock:
            if self._closing:
                return
            self._closing = True
            client = self._client

        self._stop_reports.set()
        if self._report_thread is not None:
            self._report_thread.join(timeout=1.0)

        if client is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        try:
            if self.is_connected:
                info = self._publish_status(client, online=False)
                try:
                    info.wait_for_publish(timeout=SHUTDOWN_PUBLISH_TIMEOUT)
                except (RuntimeError, ValueError) as e:
                    logger.debug(f"Offline status not delivered: {e}")
            client.disconnect()
        finally:
            client.loop_stop()
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from MQTT broker")
