"""
Shared transport workers.

Thousands of paho clients would need thousands of ``loop_start()`` threads.
Instead each client is assigned to one of a small group of workers; a worker
multiplexes the sockets of its clients with ``selectors`` and drives them
through paho's external-loop API (``loop_read``/``loop_write``/``loop_misc``).
Every socket operation and every paho callback of a client therefore runs on
the same worker thread. Publishes from other threads only queue the packet
and wake the worker through ``on_socket_register_write``.
"""

import heapq
import itertools
import logging
import selectors
import socket
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Set, Tuple

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


class EventLoopWorker(threading.Thread):
    """One selector loop serving many paho clients."""

    def __init__(self, name: str, tick: float = 1.0, misc_interval: float = 1.0):
        super().__init__(name=name, daemon=True)
        self.tick = tick
        self.misc_interval = misc_interval

        self._selector = selectors.DefaultSelector()
        self._clients: Set[mqtt.Client] = set()
        self._names: Dict[mqtt.Client, str] = {}
        self._sockets: Dict[mqtt.Client, socket.socket] = {}

        # attach/detach requests and timers may come from any thread
        self._lock = threading.Lock()
        self._pending: Deque[Tuple[bool, mqtt.Client, str]] = deque()
        self._timers: List[Tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()

        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)

        self._stopping = threading.Event()
        self._last_misc = 0.0

    def attach(self, client: mqtt.Client, name: str = ""):
        """Start driving ``client``. Safe to call before ``client.connect()``."""
        client.on_socket_register_write = self._on_socket_register_write
        with self._lock:
            self._pending.append((True, client, name))
        self.wake()

    def detach(self, client: mqtt.Client):
        with self._lock:
            self._pending.append((False, client, ""))
        self.wake()

    def call_later(self, delay: float, callback: Callable[[], None]):
        """Run ``callback`` on this worker thread after ``delay`` seconds."""
        with self._lock:
            heapq.heappush(self._timers, (time.monotonic() + delay, next(self._seq), callback))
        self.wake()

    def wake(self):
        if self._wake_w.fileno() == -1:
            return
        try:
            self._wake_w.send(b"\0")
        except BlockingIOError:
            # buffer full, a wakeup is already pending
            pass

    def stop(self):
        self._stopping.set()
        self.wake()

    def _on_socket_register_write(self, client, userdata, sock):
        self.wake()

    def run(self):
        logger.debug(f"{self.name} started")
        try:
            while not self._stopping.is_set():
                self._drain_pending()
                self._sync_sockets()
                for key, mask in self._selector.select(self._next_timeout()):
                    if key.data is None:
                        self._drain_wakeups()
                        continue
                    client = key.data
                    if mask & selectors.EVENT_READ:
                        self._read(client, key.fileobj)
                    if mask & selectors.EVENT_WRITE:
                        self._call(client, client.loop_write)
                self._run_due_timers()
                self._run_misc()
        finally:
            self._close()
            logger.debug(f"{self.name} stopped")

    def _read(self, client: mqtt.Client, sock):
        self._call(client, client.loop_read)
        # TLS may have decrypted bytes buffered that select() cannot see
        while client.socket() is sock and getattr(sock, "pending", None) and sock.pending() > 0:
            self._call(client, client.loop_read)

    def _call(self, client: mqtt.Client, operation: Callable[[], int]):
        try:
            rc = operation()
        except Exception:
            logger.exception(f"{self.name}: {operation.__name__} failed for client "
                             f"{self._names.get(client, '?')}")
            return
        if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            logger.debug(f"{self.name}: {operation.__name__} for client "
                         f"{self._names.get(client, '?')} returned {mqtt.error_string(rc)}")

    def _drain_wakeups(self):
        try:
            while self._wake_r.recv(4096):
                pass
        except BlockingIOError:
            pass

    def _drain_pending(self):
        with self._lock:
            pending = list(self._pending)
            self._pending.clear()
        for attach, client, name in pending:
            if attach:
                self._clients.add(client)
                self._names[client] = name
            else:
                self._clients.discard(client)
                self._names.pop(client, None)

    def _sync_sockets(self):
        # unregister everything stale first, a new socket may reuse a closed fd
        stale = [client for client, sock in self._sockets.items()
                 if client not in self._clients or client.socket() is not sock]
        for client in stale:
            sock = self._sockets.pop(client)
            try:
                self._selector.unregister(sock)
            except (KeyError, ValueError):
                logger.debug(f"{self.name}: socket of {self._names.get(client, '?')} "
                             f"already gone")

        for client in self._clients:
            sock = client.socket()
            if sock is None:
                continue
            events = selectors.EVENT_READ
            if client.want_write():
                events |= selectors.EVENT_WRITE
            try:
                if client in self._sockets:
                    if self._selector.get_key(sock).events != events:
                        self._selector.modify(sock, events, client)
                else:
                    self._selector.register(sock, events, client)
                    self._sockets[client] = sock
            except (KeyError, ValueError, OSError) as e:
                logger.warning(f"{self.name}: cannot watch socket of client "
                               f"{self._names.get(client, '?')}: {e}")

    def _next_timeout(self) -> float:
        with self._lock:
            if not self._timers:
                return self.tick
            return max(0.0, min(self.tick, self._timers[0][0] - time.monotonic()))

    def _run_due_timers(self):
        now = time.monotonic()
        due = []
        with self._lock:
            while self._timers and self._timers[0][0] <= now:
                due.append(heapq.heappop(self._timers)[2])
        for callback in due:
            try:
                callback()
            except Exception:
                logger.exception(f"{self.name}: timer callback failed")

    def _run_misc(self):
        now = time.monotonic()
        if now - self._last_misc < self.misc_interval:
            return
        self._last_misc = now
        for client in list(self._clients):
            self._call(client, client.loop_misc)

    def _close(self):
        for sock in self._sockets.values():
            try:
                self._selector.unregister(sock)
            except (KeyError, ValueError):
                pass
        self._sockets.clear()
        self._selector.close()
        self._wake_r.close()
        self._wake_w.close()


class EventLoopGroup:
    """Fixed set of workers; clients are spread over them round robin."""

    def __init__(self, size: int, tick: float = 1.0):
        if size <= 0:
            raise ValueError("event loop group needs at least one worker")
        self.workers = [EventLoopWorker(f"mqtt-io-{i}", tick=tick) for i in range(size)]
        self._next = itertools.count()
        self._started = False

    def start(self):
        if self._started:
            return
        self._started = True
        for worker in self.workers:
            worker.start()
        logger.info(f"Started {len(self.workers)} transport workers")

    def next(self) -> EventLoopWorker:
        return self.workers[next(self._next) % len(self.workers)]

    def shutdown(self, timeout: float = 5.0):
        for worker in self.workers:
            worker.stop()
        if self._started:
            for worker in self.workers:
                worker.join(timeout)
        logger.info("Transport workers stopped")
