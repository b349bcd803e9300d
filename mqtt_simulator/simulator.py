"""
Multi-client orchestration.

MQTTSimulator owns the shared state of a run (session registry, handler
maps, worker pools) and creates one ConnectionSupervisor per client index.
Registration scripts extend it through ``bind_handler``, ``bind_child_handler``,
``on_connect``, ``on_event``, ``on_auth``, ``run_rate`` and ``run_delay``.
"""

import json
import logging
import random
import time
from typing import Callable, Dict, List, Optional

from .addressing import AddressAllocator
from .config import PoolConfig, SimulatorConfig, build_ssl_context
from .credentials import CredentialProvider
from .errors import AddressAllocationError
from .event_loop import EventLoopGroup
from .hooks import AuthOverride, ConnectHook, EventEmitter, MessageHandler, SimulatorHooks
from .registry import SessionRegistry
from .router import HandlerRegistry, MessageRouter
from .scheduling import EventScheduler, ScheduledExecutor, ScheduledTask
from .stats import SimulatorStats
from .supervisor import ClientFactory, ConnectionSupervisor, TransportSettings, create_client

logger = logging.getLogger(__name__)

# Delay before the first run of a fixed-rate task, in milliseconds
RATE_INITIAL_DELAY_MS = 2000

Registration = Callable[["MQTTSimulator"], None]


class MQTTSimulator:
    """
    Simulates ``config.limit`` MQTT devices against one broker.

    Args:
        config: Resolved simulator configuration
        pools: Worker pool sizing; defaults to the sizes in ``config``
        event_loops: Transport worker group (built from ``pools`` if None)
        scheduler: Scheduled-task pool (built from ``pools`` if None)
        client_factory: Builds the paho client of each supervisor
        rng: Random source of the event push
    """

    def __init__(self, config: SimulatorConfig, pools: Optional[PoolConfig] = None,
                 event_loops: Optional[EventLoopGroup] = None,
                 scheduler: Optional[ScheduledExecutor] = None,
                 client_factory: ClientFactory = create_client,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.pools = pools or config.pools
        self.event_loops = event_loops or EventLoopGroup(self.pools.io_threads)
        self.scheduler = scheduler or ScheduledExecutor(self.pools.scheduler_threads)
        self.client_factory = client_factory
        self.rng = rng

        self.hooks = SimulatorHooks()
        self.handlers = HandlerRegistry()
        self.registry = SessionRegistry()
        self.stats = SimulatorStats()
        self.router = MessageRouter(self.handlers, self.registry, self.stats)
        self.supervisors: List[ConnectionSupervisor] = []
        self.event_scheduler: Optional[EventScheduler] = None

    # Extension points

    def bind_handler(self, topic: str, handler: MessageHandler):
        self.handlers.bind_handler(topic, handler)

    def bind_child_handler(self, topic: str, handler: MessageHandler):
        self.handlers.bind_child_handler(topic, handler)

    def on_connect(self, hook: ConnectHook):
        self.hooks.on_connect = hook

    def on_event(self, hook: EventEmitter):
        self.hooks.on_event = hook

    def on_auth(self, hook: AuthOverride):
        self.hooks.on_auth = hook

    def run_rate(self, fn: Callable[[], None], period_ms: int) -> ScheduledTask:
        """Run ``fn`` every ``period_ms`` milliseconds, first after two seconds."""
        return self.scheduler.schedule_at_fixed_rate(fn, RATE_INITIAL_DELAY_MS / 1000.0,
                                                     period_ms / 1000.0)

    def run_delay(self, fn: Callable[[], None], delay_ms: int) -> ScheduledTask:
        return self.scheduler.schedule(fn, delay_ms / 1000.0)

    # Lifecycle

    def transport_settings(self) -> TransportSettings:
        return TransportSettings(
            host=self.config.address,
            port=self.config.port,
            keep_alive=self.config.keep_alive,
            retry_interval=self.config.retry_interval,
            connect_wait=self.config.connect_wait,
            failure_threshold=self.config.failure_threshold,
            qos=self.config.qos,
            ssl_context=build_ssl_context(self.config),
        )

    def start(self, registration: Optional[Registration] = None):
        """
        Register handlers, then connect every client in ``[start, start + limit)``.

        Args:
            registration: Run once with this simulator before any connection opens

        Raises:
            ConfigError: TLS material is missing or unreadable
        """
        if registration is not None:
            registration(self)

        settings = self.transport_settings()
        credentials = CredentialProvider(
            prefix=self.config.prefix,
            secure_id=self.config.secure_id,
            secure_key=self.config.secure_key,
            override=self.hooks.on_auth,
        )
        allocator = AddressAllocator(self.config.binds, self.config.limit,
                                     self.config.bind_port_start)

        self.event_loops.start()
        self.scheduler.start()

        first, end = self.config.start, self.config.start + self.config.limit
        logger.info(f"Connecting clients {first}..{end - 1} to "
                    f"{settings.host}:{settings.port}")
        for ordinal, index in enumerate(range(first, end)):
            credential = credentials.provide(index)
            try:
                bind = allocator.allocate(ordinal)
            except AddressAllocationError as e:
                logger.error(f"Client {credential.client_id} skipped: {e}")
                continue

            supervisor = ConnectionSupervisor(
                credential, bind, settings, self.registry, self.router,
                self.event_loops.next(), hooks=self.hooks, stats=self.stats,
                client_factory=self.client_factory,
            )
            self.supervisors.append(supervisor)
            supervisor.connect()

        logger.info(f"{len(self.registry)} of {self.config.limit} clients connected "
                    f"after startup")

        if self.config.enable_event and self.hooks.on_event is not None:
            self.event_scheduler = EventScheduler(self.registry, self.hooks.on_event,
                                                  self.config.event_limit, rng=self.rng)
            self.run_rate(self.event_scheduler.push_events, self.config.event_rate)
            logger.info(f"Event push enabled: up to {self.config.event_limit + 1} events "
                        f"every {self.config.event_rate}ms")

    def statistics(self) -> Dict[str, int]:
        data = self.stats.snapshot()
        data["sessions"] = len(self.registry)
        return data

    def print_statistics(self):
        self.stats.print_statistics(len(self.registry))

    def shutdown(self):
        """Stop scheduled tasks, disconnect every client and stop the transport workers."""
        logger.info("Shutting down simulator...")
        self.scheduler.shutdown(wait=False)
        for supervisor in self.supervisors:
            supervisor.terminate()
        if self.supervisors:
            # give the workers a moment to flush DISCONNECT packets
            time.sleep(1)
        self.event_loops.shutdown()
        logger.info("Simulator shutdown complete")

    def describe_config(self) -> str:
        return json.dumps(self.config.as_dict(), indent=2)
