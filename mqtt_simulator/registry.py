import logging
import threading
from typing import Dict, List, Optional

from .session import ClientSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    clientId -> ClientSession for every currently registered client.

    Written by connection supervisors on their worker threads, read by the
    router and the event scheduler. Entries are never removed or replaced.
    """

    def __init__(self):
        self._sessions: Dict[str, ClientSession] = {}
        self._lock = threading.Lock()

    def register(self, session: ClientSession) -> bool:
        """Insert ``session``; returns False if its client id is already present."""
        with self._lock:
            if session.client_id in self._sessions:
                logger.warning(f"Client {session.client_id} is already registered")
                return False
            self._sessions[session.client_id] = session
            return True

    def get(self, client_id: str) -> Optional[ClientSession]:
        with self._lock:
            return self._sessions.get(client_id)

    def snapshot(self) -> List[ClientSession]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
