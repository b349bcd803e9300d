"""Spreads outbound client connections across local network interfaces."""

import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from .counters import AtomicCounter
from .errors import AddressAllocationError

logger = logging.getLogger(__name__)

BindAddress = Tuple[str, int]


class AddressAllocator:
    """
    Maps a client ordinal to a local (host, port) pair.

    The configured clients are split into equal contiguous blocks, one per
    interface; the last interface absorbs any remainder. Each host has its
    own port counter starting at ``bind_port_start``, so the first port handed
    out for a host is ``bind_port_start + 1``. Ports are never returned.
    """

    def __init__(self, binds: Optional[Sequence[str]], total_clients: int,
                 bind_port_start: int = 10000):
        self.binds: List[str] = list(binds or [])
        self.total_clients = total_clients
        self.bind_port_start = bind_port_start
        self._port_counters: Dict[str, AtomicCounter] = {}
        self._lock = threading.Lock()

    def _counter(self, host: str) -> AtomicCounter:
        with self._lock:
            counter = self._port_counters.get(host)
            if counter is None:
                counter = self._port_counters[host] = AtomicCounter(self.bind_port_start)
            return counter

    def select_host(self, index: int) -> str:
        per_interface = self.total_clients // len(self.binds)
        if per_interface == 0:
            raise AddressAllocationError(
                f"{len(self.binds)} bind interfaces configured for only "
                f"{self.total_clients} clients")
        return self.binds[min(index // per_interface, len(self.binds) - 1)]

    def allocate(self, index: int) -> Optional[BindAddress]:
        """
        Allocate the bind address for the client at ``index``.

        Returns:
            (host, port), or None when no interfaces are configured

        Raises:
            AddressAllocationError: more interfaces than clients
        """
        if not self.binds:
            return None
        host = self.select_host(index)
        port = self._counter(host).increment_and_get()
        logger.debug(f"Client #{index} bound to {host}:{port}")
        return host, port
