"""Live session of a connected simulated device."""

import json
import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, Mapping, Optional, Tuple

import paho.mqtt.client as mqtt

from .credentials import ClientCredential
from .errors import TransportFailure
from .stats import SimulatorStats

logger = logging.getLogger(__name__)

CHILD_DEVICE_TOPIC = "/child-device-message"


def encode_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(',', ':'))


class ClientSession:
    """
    Registry-visible handle to one connected client.

    Publishing never blocks: each call returns a Future that paho's publish
    acknowledgement resolves on the client's event-loop worker.
    """

    def __init__(self, credential: ClientCredential, client: mqtt.Client,
                 qos: int = 0, stats: Optional[SimulatorStats] = None):
        self.credential = credential
        self.client = client
        self.qos = qos
        self.stats = stats
        self._pending: Dict[int, Tuple[str, str, Future]] = {}
        # acknowledgements that arrived before publish() recorded their mid
        self._early_acks: Dict[int, Any] = {}
        self._pending_lock = threading.Lock()
        self._closed = False

    @property
    def client_id(self) -> str:
        return self.credential.client_id

    def publish(self, topic: str, payload: Any) -> Future:
        """
        Publish ``payload`` on ``topic``.

        Args:
            topic: MQTT topic
            payload: str (sent as-is) or any JSON-serializable value

        Returns:
            Future resolved with the message id, or failed with TransportFailure
        """
        data = encode_payload(payload)
        future: Future = Future()
        if self._closed:
            self._fail(topic, data, future, "session closed")
            return future

        # paho holds its message lock while calling on_publish, so its
        # publish() must not run under _pending_lock
        msg_info = self.client.publish(topic, data, qos=self.qos)
        rc = msg_info.rc
        # QoS 1/2 messages stay queued in paho while offline and go out on reconnect
        queued = rc == mqtt.MQTT_ERR_SUCCESS or (self.qos > 0 and rc == mqtt.MQTT_ERR_NO_CONN)
        if not queued:
            self._fail(topic, data, future, mqtt.error_string(rc))
            return future

        with self._pending_lock:
            closed = self._closed
            acknowledged = msg_info.mid in self._early_acks
            reason_code = self._early_acks.pop(msg_info.mid, None)
            if not closed and not acknowledged:
                self._pending[msg_info.mid] = (topic, data, future)
                return future

        if closed:
            self._fail(topic, data, future, "session closed")
        else:
            self._complete(msg_info.mid, topic, data, future, reason_code)
        return future

    def publish_to_child_device(self, topic: str, device_id: str, payload: Any) -> Future:
        """Wrap ``payload`` for a child device and publish it on the parent's connection."""
        if isinstance(payload, str):
            message = json.loads(payload)
        elif isinstance(payload, Mapping):
            message = dict(payload)
        else:
            raise TypeError(f"child device payload must be a mapping or JSON string, "
                            f"got {type(payload).__name__}")
        message["clientId"] = device_id
        envelope = {
            "topic": topic,
            "message": message,
            "childDeviceId": device_id,
        }
        return self.publish(CHILD_DEVICE_TOPIC, envelope)

    def subscribe(self, topic: str, qos: int = 0) -> bool:
        result, mid = self.client.subscribe(topic, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Client {self.client_id} failed to subscribe to {topic}: "
                         f"{mqtt.error_string(result)}")
            return False
        logger.debug(f"Client {self.client_id} subscribing to {topic} (MID: {mid})")
        return True

    def publish_completed(self, mid: int, reason_code=None):
        """Resolve the pending publish ``mid``; called from the paho on_publish callback."""
        with self._pending_lock:
            pending = self._pending.pop(mid, None)
            if pending is None:
                if self._closed:
                    logger.debug(f"Client {self.client_id}: acknowledgement for MID {mid} "
                                 f"after close")
                else:
                    # publish() has not recorded this mid yet
                    self._early_acks[mid] = reason_code
                return

        topic, data, future = pending
        self._complete(mid, topic, data, future, reason_code)

    def _complete(self, mid: int, topic: str, data: str, future: Future, reason_code):
        if reason_code is not None and reason_code.is_failure:
            self._fail(topic, data, future, str(reason_code))
            return

        logger.info(f"Published {topic}=>{data}")
        if self.stats is not None:
            self.stats.incr("published")
        future.set_result(mid)

    def connection_lost(self, cause: Exception):
        """
        Fail the publishes paho discards with a dropped connection.

        Only QoS 0 messages are lost; QoS 1 and 2 messages are resent after
        reconnecting and resolve normally.
        """
        if self.qos > 0:
            return
        self._fail_pending(f"connection lost: {cause}")

    def close(self, cause: str = "session closed"):
        """Fail every outstanding publish; later publishes fail immediately."""
        with self._pending_lock:
            self._closed = True
            self._early_acks.clear()
        self._fail_pending(cause)

    def _fail_pending(self, cause: str):
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        if pending:
            logger.warning(f"Client {self.client_id}: {len(pending)} pending publishes "
                           f"failed ({cause})")
        for topic, data, future in pending:
            self._fail(topic, data, future, cause)

    def _fail(self, topic: str, data: str, future: Future, cause: str):
        logger.error(f"Publish {topic}=>{data} from {self.client_id} failed: {cause}")
        if self.stats is not None:
            self.stats.incr("publish_errors")
        future.set_exception(TransportFailure(cause))

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def __repr__(self):
        return f"ClientSession({self.client_id!r})"
