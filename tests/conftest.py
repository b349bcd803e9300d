import random

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from mqtt_simulator.config import SimulatorConfig
from mqtt_simulator.credentials import ClientCredential
from mqtt_simulator.registry import SessionRegistry
from mqtt_simulator.router import HandlerRegistry, MessageRouter
from mqtt_simulator.session import ClientSession
from mqtt_simulator.stats import SimulatorStats
from mqtt_simulator.supervisor import TransportSettings


def accepted():
    return ReasonCode(PacketTypes.CONNACK, "Success")


def not_authorized():
    return ReasonCode(PacketTypes.CONNACK, "Not authorized")


def connection_dropped():
    return ReasonCode(PacketTypes.DISCONNECT, "Unspecified error")


class FakeClient:
    """Stands in for paho's Client; the connect handshake answers synchronously."""

    def __init__(self, credential=None, settings=None):
        self.credential = credential
        self.settings = settings
        self.connack = accepted()
        self.connect_error = None
        self.reconnect_errors = []
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS
        self.disconnect_rc = mqtt.MQTT_ERR_NO_CONN

        self.connect_calls = []
        self.reconnect_calls = 0
        self.disconnect_calls = 0
        self.published = []
        self.subscribed = []
        self._mid = 0

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_publish = None
        self.on_log = None
        self.on_socket_register_write = None

    def connect(self, host, port=1883, keepalive=60, bind_address="", bind_port=0):
        self.connect_calls.append((host, port, keepalive, bind_address, bind_port))
        if self.connect_error is not None:
            raise self.connect_error
        self._answer()
        return mqtt.MQTT_ERR_SUCCESS

    def reconnect(self):
        self.reconnect_calls += 1
        if self.reconnect_errors:
            raise self.reconnect_errors.pop(0)
        self._answer()
        return mqtt.MQTT_ERR_SUCCESS

    def _answer(self):
        if self.connack is not None:
            self.on_connect(self, None, None, self.connack, None)

    def disconnect(self):
        self.disconnect_calls += 1
        return self.disconnect_rc

    def drop(self):
        self.on_disconnect(self, None, None, connection_dropped(), None)

    def publish(self, topic, payload=None, qos=0, retain=False):
        self._mid += 1
        self.published.append((topic, payload, qos))
        info = mqtt.MQTTMessageInfo(self._mid)
        info.rc = self.publish_rc
        return info

    def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))
        return mqtt.MQTT_ERR_SUCCESS, len(self.subscribed)


class FakeWorker:
    """Records attach/detach and holds timers until run_timers()."""

    def __init__(self):
        self.attached = []
        self.detached = []
        self.timers = []

    def attach(self, client, name=""):
        self.attached.append((client, name))

    def detach(self, client):
        self.detached.append(client)

    def call_later(self, delay, callback):
        self.timers.append((delay, callback))

    def run_timers(self):
        timers, self.timers = self.timers, []
        for _, callback in timers:
            callback()


class FakeEventLoopGroup:
    def __init__(self):
        self.worker = FakeWorker()
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def next(self):
        return self.worker

    def shutdown(self, timeout=5.0):
        self.stopped = True


class FakeScheduler:
    def __init__(self):
        self.once = []
        self.rates = []
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def schedule(self, fn, delay):
        self.once.append((fn, delay))

    def schedule_at_fixed_rate(self, fn, initial_delay, period):
        self.rates.append((fn, initial_delay, period))

    def shutdown(self, wait=True):
        self.stopped = True


@pytest.fixture
def settings():
    return TransportSettings(host="broker.local", port=1883, retry_interval=5.0,
                             connect_wait=0.01, failure_threshold=5)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def handlers():
    return HandlerRegistry()


@pytest.fixture
def stats():
    return SimulatorStats()


@pytest.fixture
def router(handlers, registry, stats):
    return MessageRouter(handlers, registry, stats)


@pytest.fixture
def worker():
    return FakeWorker()


@pytest.fixture
def make_session(stats):
    def factory(client_id="test0", client=None):
        return ClientSession(ClientCredential(client_id, "user", "pass"),
                             client or FakeClient(), stats=stats)
    return factory


@pytest.fixture
def small_config():
    return SimulatorConfig(address="broker.local", limit=4, connect_wait=0.01,
                           io_threads=1, scheduler_threads=1)


@pytest.fixture
def rng():
    return random.Random(1234)
