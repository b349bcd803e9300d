"""Dispatches inbound messages to the handlers registered for their topic."""

import json
import logging
from typing import Any, Dict, Optional

from .hooks import MessageHandler
from .registry import SessionRegistry
from .session import CHILD_DEVICE_TOPIC
from .stats import SimulatorStats

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Topic and child-topic handler maps.

    Filled once by the registration script before any client connects and
    only read afterwards.
    """

    def __init__(self):
        self.handlers: Dict[str, MessageHandler] = {}
        self.child_handlers: Dict[str, MessageHandler] = {}

    def bind_handler(self, topic: str, handler: MessageHandler):
        self.handlers[topic] = handler
        logger.debug(f"Handler bound for topic {topic}")

    def bind_child_handler(self, topic: str, handler: MessageHandler):
        self.child_handlers[topic] = handler
        logger.debug(f"Child handler bound for topic {topic}")


class MessageRouter:
    def __init__(self, handlers: HandlerRegistry, registry: SessionRegistry,
                 stats: Optional[SimulatorStats] = None):
        self.handlers = handlers
        self.registry = registry
        self.stats = stats

    def route(self, topic: str, payload: bytes, origin_client_id: str) -> bool:
        """
        Route one inbound message.

        Unknown topics are dropped silently. Decoding errors and handler
        exceptions are logged and never reach the transport loop.

        Returns:
            bool: True if a handler was invoked
        """
        data = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        logger.info(f"{origin_client_id} received {topic}=>{data}")
        if self.stats is not None:
            self.stats.incr("received")

        try:
            handler = self.handlers.handlers.get(topic)
            if handler is not None:
                handler(json.loads(data), self.registry.get(origin_client_id))
                return True

            if topic == CHILD_DEVICE_TOPIC:
                return self._route_child(json.loads(data), origin_client_id)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping undecodable message on {topic} for {origin_client_id}: {e}")
        except Exception:
            logger.exception(f"Handler for {topic} failed on client {origin_client_id}")
        return False

    def _route_child(self, envelope: Any, origin_client_id: str) -> bool:
        if not isinstance(envelope, dict):
            logger.warning(f"Child device envelope for {origin_client_id} is not an object")
            return False
        child_topic = envelope.get("childTopic")
        handler = self.handlers.child_handlers.get(child_topic)
        if handler is None:
            logger.debug(f"No child handler for {child_topic}, "
                         f"device {envelope.get('childDeviceId')}")
            return False
        handler(envelope.get("childMessage"), self.registry.get(origin_client_id))
        return True
