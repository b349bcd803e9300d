import socket
import threading

import paho.mqtt.client as mqtt
import pytest

from mqtt_simulator.event_loop import EventLoopGroup, EventLoopWorker


class SocketClient:
    """Minimal external-loop client backed by one end of a socketpair."""

    def __init__(self, sock):
        self.sock = sock
        self.sock.setblocking(False)
        self.received = []
        self.data_read = threading.Event()
        self.misc_calls = 0
        self.on_socket_register_write = None

    def socket(self):
        return self.sock

    def want_write(self):
        return False

    def loop_read(self):
        try:
            self.received.append(self.sock.recv(4096))
        except BlockingIOError:
            pass
        self.data_read.set()
        return mqtt.MQTT_ERR_SUCCESS

    def loop_write(self):
        return mqtt.MQTT_ERR_SUCCESS

    def loop_misc(self):
        self.misc_calls += 1
        return mqtt.MQTT_ERR_SUCCESS


@pytest.fixture
def worker():
    worker = EventLoopWorker("test-io", tick=0.05, misc_interval=0.05)
    worker.start()
    yield worker
    worker.stop()
    worker.join(2)


@pytest.fixture
def socket_pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_incoming_data_is_read_on_the_worker(worker, socket_pair):
    left, right = socket_pair
    client = SocketClient(left)
    worker.attach(client, "device-1")

    assert client.on_socket_register_write is not None
    right.sendall(b"\x20\x02\x00\x00")

    assert client.data_read.wait(timeout=2)
    assert b"".join(client.received) == b"\x20\x02\x00\x00"


def test_call_later_runs_on_the_worker_thread(worker):
    ran_on = []
    done = threading.Event()

    def callback():
        ran_on.append(threading.current_thread().name)
        done.set()

    worker.call_later(0.01, callback)

    assert done.wait(timeout=2)
    assert ran_on == ["test-io"]


def test_timer_failure_does_not_stop_the_worker(worker):
    done = threading.Event()

    def broken():
        raise RuntimeError("timer broke")

    worker.call_later(0, broken)
    worker.call_later(0.01, done.set)

    assert done.wait(timeout=2)
    assert worker.is_alive()


def test_misc_runs_periodically_for_attached_clients(worker, socket_pair):
    client = SocketClient(socket_pair[0])
    worker.attach(client)

    done = threading.Event()
    worker.call_later(0.3, done.set)
    done.wait(timeout=2)

    assert client.misc_calls >= 2


def test_detached_client_is_no_longer_read(worker, socket_pair):
    left, right = socket_pair
    client = SocketClient(left)
    worker.attach(client)
    right.sendall(b"x")
    assert client.data_read.wait(timeout=2)

    worker.detach(client)
    synced = threading.Event()
    worker.call_later(0.1, synced.set)
    synced.wait(timeout=2)

    client.data_read.clear()
    right.sendall(b"y")
    assert not client.data_read.wait(timeout=0.3)


def test_group_hands_out_workers_round_robin():
    group = EventLoopGroup(3)
    picked = [group.next() for _ in range(6)]
    assert picked[:3] == group.workers
    assert picked[3:] == group.workers
    group.shutdown()


def test_group_needs_a_worker():
    with pytest.raises(ValueError):
        EventLoopGroup(0)
