import logging
import threading
import time
from typing import Dict

logger = logging.getLogger(__name__)


class SimulatorStats:
    """Thread-safe counters shared by every client of a run."""

    FIELDS = ("connected", "reconnected", "rejected", "terminated", "transport_failures",
              "connect_errors", "published", "publish_errors", "received")

    def __init__(self):
        self._counts: Dict[str, int] = dict.fromkeys(self.FIELDS, 0)
        self._lock = threading.Lock()
        self.last_stats_time = time.time()
        self.last_stats_published = 0

    def incr(self, name: str, amount: int = 1):
        with self._lock:
            self._counts[name] += amount

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def __getitem__(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def print_statistics(self, sessions: int):
        """Log the counters and the publish rate since the previous call."""
        current_time = time.time()
        counts = self.snapshot()

        elapsed = current_time - self.last_stats_time
        current_rate = 0.0
        if elapsed > 0:
            current_rate = (counts["published"] - self.last_stats_published) / elapsed

        logger.info("=== Simulator Statistics ===")
        logger.info(f"Registered sessions: {sessions}")
        logger.info(f"Connected: {counts['connected']}, reconnected: {counts['reconnected']}")
        logger.info(f"Rejected: {counts['rejected']}, terminated: {counts['terminated']}")
        logger.info(f"Transport failures: {counts['transport_failures']}, "
                    f"failed connect attempts: {counts['connect_errors']}")
        logger.info(f"Messages published: {counts['published']}, errors: {counts['publish_errors']}")
        logger.info(f"Messages received: {counts['received']}")
        logger.info(f"Current publish rate: {current_rate:.1f} msg/sec")

        attempts = counts["published"] + counts["publish_errors"]
        if attempts > 0:
            logger.info(f"Publish success rate: {(counts['published'] / attempts * 100):.1f}%")

        self.last_stats_time = current_time
        self.last_stats_published = counts["published"]
