"""Connection lifecycle of a single simulated device."""

import enum
import logging
import ssl
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .addressing import BindAddress
from .counters import AtomicCounter
from .credentials import ClientCredential
from .errors import ConnectRejected, TransportFailure
from .event_loop import EventLoopWorker
from .hooks import SimulatorHooks
from .registry import SessionRegistry
from .router import MessageRouter
from .session import ClientSession
from .stats import SimulatorStats

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILING = "failing"
    TERMINATED = "terminated"


@dataclass
class TransportSettings:
    host: str = "127.0.0.1"
    port: int = 1883
    keep_alive: int = 60
    retry_interval: float = 5.0
    connect_wait: float = 2.0
    failure_threshold: int = 5
    qos: int = 0
    ssl_context: Optional[ssl.SSLContext] = None


def create_client(credential: ClientCredential, settings: TransportSettings) -> mqtt.Client:
    """Build an unconnected paho client for ``credential``."""
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=credential.client_id,
        clean_session=True,
        protocol=mqtt.MQTTv311,
    )
    if credential.username is not None:
        client.username_pw_set(credential.username, credential.password)
    if settings.ssl_context is not None:
        client.tls_set_context(settings.ssl_context)
    return client


ClientFactory = Callable[[ClientCredential, TransportSettings], mqtt.Client]


class ConnectionSupervisor:
    """
    Drives one client through IDLE -> CONNECTING -> CONNECTED -> FAILING -> TERMINATED.

    A rejected CONNACK is terminal. Losing an established connection bumps a
    failure counter that is never reset; below ``failure_threshold`` a
    reconnect is scheduled on the client's worker after ``retry_interval``
    seconds, at the threshold the client is disconnected for good. A connect
    or reconnect attempt that fails before the broker accepts it is retried
    after the same interval and is not counted.
    """

    def __init__(self, credential: ClientCredential, bind: Optional[BindAddress],
                 settings: TransportSettings, registry: SessionRegistry,
                 router: MessageRouter, worker: EventLoopWorker,
                 hooks: Optional[SimulatorHooks] = None,
                 stats: Optional[SimulatorStats] = None,
                 client_factory: ClientFactory = create_client):
        self.credential = credential
        self.bind = bind
        self.settings = settings
        self.registry = registry
        self.router = router
        self.worker = worker
        self.hooks = hooks or SimulatorHooks()
        self.stats = stats

        self.state = SessionState.IDLE
        self.failures = AtomicCounter()
        self.session: Optional[ClientSession] = None
        self.last_error: Optional[Exception] = None
        self._state_lock = threading.Lock()
        self._outcome = threading.Event()

        self.client = client_factory(credential, settings)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message
        self.client.on_publish = self.on_publish
        self.client.on_log = self.on_log

    @property
    def client_id(self) -> str:
        return self.credential.client_id

    def _transition(self, state: SessionState) -> bool:
        """Move to ``state`` unless already terminated."""
        with self._state_lock:
            if self.state is SessionState.TERMINATED:
                return False
            self.state = state
            return True

    def connect(self) -> bool:
        """
        Issue the connect request and wait briefly for the broker's answer.

        The wait only paces bulk startup; a CONNACK arriving later is still
        handled on the worker.

        Returns:
            bool: True if the client was connected when the wait ended
        """
        if not self._transition(SessionState.CONNECTING):
            return False
        self.worker.attach(self.client, self.client_id)

        bind_address, bind_port = self.bind or ("", 0)
        try:
            self.client.connect(self.settings.host, self.settings.port,
                                keepalive=self.settings.keep_alive,
                                bind_address=bind_address, bind_port=bind_port)
        except OSError as e:
            self._retry(e)
            return False

        if not self._outcome.wait(timeout=self.settings.connect_wait):
            logger.debug(f"No CONNACK for {self.client_id} within "
                         f"{self.settings.connect_wait}s, continuing")
        return self.state is SessionState.CONNECTED

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self.last_error = ConnectRejected(self.client_id, reason_code)
            logger.error(str(self.last_error))
            if self.stats is not None:
                self.stats.incr("rejected")
            self.terminate()
            self._outcome.set()
            return

        if not self._transition(SessionState.CONNECTED):
            return
        if self.session is None:
            self.session = ClientSession(self.credential, client, qos=self.settings.qos,
                                         stats=self.stats)
            self.registry.register(self.session)
            if self.stats is not None:
                self.stats.incr("connected")
            logger.debug(f"Client {self.client_id} connected")
        else:
            if self.stats is not None:
                self.stats.incr("reconnected")
            logger.info(f"Client {self.client_id} reconnected")
        self._outcome.set()
        self._fire_connect_hook()

    def _fire_connect_hook(self):
        hook = self.hooks.on_connect
        if hook is None:
            return
        try:
            hook(self.session)
        except Exception:
            logger.exception(f"Connect hook failed for client {self.client_id}")

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        with self._state_lock:
            state = self.state
        if state is SessionState.TERMINATED:
            self.worker.detach(self.client)
            return

        cause = TransportFailure(f"connection lost ({reason_code})")
        if self.session is not None:
            self.session.connection_lost(cause)
        if state is SessionState.CONNECTED:
            self.connection_lost(cause)
        elif state is SessionState.CONNECTING:
            # closed before the broker accepted this attempt
            self._retry(cause)
        else:
            logger.debug(f"Client {self.client_id} disconnected while {state.value}")

    def _retry(self, cause: Exception):
        """Schedule another connect attempt without counting a failure."""
        self.last_error = cause
        if not self._transition(SessionState.FAILING):
            return
        if self.stats is not None:
            self.stats.incr("connect_errors")
        logger.warning(f"Client {self.client_id} could not connect, retrying in "
                       f"{self.settings.retry_interval}s: {type(cause).__name__}: {cause}")
        self.worker.call_later(self.settings.retry_interval, self._reconnect)

    def connection_lost(self, cause: Exception):
        """Count the loss of an established connection and either schedule a reconnect or give up."""
        self.last_error = cause
        failures = self.failures.increment_and_get()
        if self.stats is not None:
            self.stats.incr("transport_failures")

        if failures >= self.settings.failure_threshold:
            logger.error(f"Client {self.client_id} failed {failures} times, disconnecting: "
                         f"{type(cause).__name__}: {cause}")
            if self.stats is not None:
                self.stats.incr("terminated")
            self.terminate()
            return

        if not self._transition(SessionState.FAILING):
            return
        logger.warning(f"Client {self.client_id} connection failed, "
                       f"{type(cause).__name__}: {cause}")
        self.worker.call_later(self.settings.retry_interval, self._reconnect)

    def _reconnect(self):
        if not self._transition(SessionState.CONNECTING):
            return
        logger.debug(f"Reconnecting client {self.client_id}")
        try:
            self.client.reconnect()
        except OSError as e:
            self._retry(e)

    def terminate(self):
        """Disconnect immediately; the client is never reconnected afterwards."""
        with self._state_lock:
            if self.state is SessionState.TERMINATED:
                return
            self.state = SessionState.TERMINATED
        self._outcome.set()
        if self.session is not None:
            self.session.close(f"client {self.client_id} terminated")

        rc = self.client.disconnect()
        if rc != mqtt.MQTT_ERR_SUCCESS:
            # no socket, so no on_disconnect will follow
            self.worker.detach(self.client)

    def on_message(self, client, userdata, message):
        self.router.route(message.topic, message.payload, self.client_id)

    def on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        if self.session is not None:
            self.session.publish_completed(mid, reason_code)

    def on_log(self, client, userdata, level, buf):
        """Forward paho's own log lines."""
        if level == mqtt.MQTT_LOG_ERR:
            logger.error(f"MQTT Client {self.client_id} Error: {buf}")
        elif level == mqtt.MQTT_LOG_WARNING:
            logger.warning(f"MQTT Client {self.client_id} Warning: {buf}")
        elif level == mqtt.MQTT_LOG_DEBUG:
            logger.debug(f"MQTT Client {self.client_id} Debug: {buf}")

    def __repr__(self):
        return f"ConnectionSupervisor({self.client_id!r}, {self.state.value})"
