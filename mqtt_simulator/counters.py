import threading


class AtomicCounter:
    """Monotonically increasing integer, safe to bump from any thread."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment_and_get(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self):
        return f"AtomicCounter({self.value})"
