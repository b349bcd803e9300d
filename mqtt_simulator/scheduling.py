"""Periodic and delayed task execution, and the random device event push."""

import heapq
import itertools
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from .hooks import EventEmitter
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class ScheduledTask:
    def __init__(self, fn: Callable[[], None], due: float, period: Optional[float] = None):
        self.fn = fn
        self.due = due
        self.period = period
        self.cancelled = False
        self.runs = 0

    def cancel(self):
        self.cancelled = True


class ScheduledExecutor:
    """
    Runs one-shot delayed and fixed-rate tasks on a ThreadPoolExecutor.

    A dispatcher thread keeps a delay queue and hands due tasks to the pool.
    A fixed-rate task is queued again only after its run finishes, so it never
    overlaps itself; a late run shifts the following ones instead of bursting.
    Exceptions are logged and do not cancel later runs.
    """

    def __init__(self, max_workers: int, name: str = "mqtt-scheduler"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._queue: List[Tuple[float, int, ScheduledTask]] = []
        self._seq = itertools.count()
        self._condition = threading.Condition()
        self._dispatcher = threading.Thread(target=self._dispatch, name=f"{name}-dispatch",
                                            daemon=True)
        self._started = False
        self._shutdown = False

    def start(self):
        with self._condition:
            if self._started:
                return
            self._started = True
        self._dispatcher.start()

    def schedule(self, fn: Callable[[], None], delay: float) -> ScheduledTask:
        """Run ``fn`` once after ``delay`` seconds."""
        task = ScheduledTask(fn, time.monotonic() + delay)
        self._enqueue(task)
        return task

    def schedule_at_fixed_rate(self, fn: Callable[[], None], initial_delay: float,
                               period: float) -> ScheduledTask:
        """Run ``fn`` after ``initial_delay`` seconds, then every ``period`` seconds."""
        if period <= 0:
            raise ValueError("period must be greater than 0")
        task = ScheduledTask(fn, time.monotonic() + initial_delay, period)
        self._enqueue(task)
        return task

    def shutdown(self, wait: bool = True):
        with self._condition:
            self._shutdown = True
            self._queue.clear()
            self._condition.notify_all()
        if self._started and wait:
            self._dispatcher.join()
        self._executor.shutdown(wait=wait)

    def _enqueue(self, task: ScheduledTask):
        with self._condition:
            if self._shutdown:
                logger.debug(f"{self.name} is shut down, dropping task")
                return
            heapq.heappush(self._queue, (task.due, next(self._seq), task))
            self._condition.notify()

    def _dispatch(self):
        with self._condition:
            while not self._shutdown:
                if not self._queue:
                    self._condition.wait()
                    continue
                delay = self._queue[0][0] - time.monotonic()
                if delay > 0:
                    self._condition.wait(delay)
                    continue
                _, _, task = heapq.heappop(self._queue)
                if task.cancelled:
                    continue
                try:
                    self._executor.submit(self._run, task)
                except RuntimeError:
                    logger.debug(f"{self.name} pool already shut down")
                    return

    def _run(self, task: ScheduledTask):
        started = time.monotonic()
        try:
            task.fn()
        except Exception:
            logger.exception(f"Scheduled task {getattr(task.fn, '__name__', task.fn)} failed")
        finally:
            task.runs += 1
        if task.period is not None and not task.cancelled:
            task.due = max(task.due + task.period, started)
            self._enqueue(task)


class EventScheduler:
    """
    Samples connected sessions and hands them to the event emitter.

    Each tick draws ``min(event_limit, sessions) + 1`` sessions uniformly with
    replacement; the emitter receives the remaining countdown and the session.
    """

    def __init__(self, registry: SessionRegistry, emitter: EventEmitter,
                 event_limit: int = 10, rng: Optional[random.Random] = None):
        self.registry = registry
        self.emitter = emitter
        self.event_limit = event_limit
        self.rng = rng or random.Random()

    def push_events(self) -> int:
        """
        Run one event push.

        Returns:
            int: number of emitter invocations
        """
        logger.info("Pushing device events")
        pushed = 0
        try:
            sessions = self.registry.snapshot()
            if not sessions:
                logger.info("No connected sessions, skipping event push")
                return 0

            remaining = min(self.event_limit, len(sessions))
            while remaining >= 0:
                session = sessions[self.rng.randrange(len(sessions))]
                self.emitter(remaining, session)
                pushed += 1
                remaining -= 1
        except Exception:
            logger.exception(f"Event push failed after {pushed} events")
        return pushed
