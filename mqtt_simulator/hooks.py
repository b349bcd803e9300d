"""
Extension points invoked by the simulator core.

Registration scripts supply plain callables; these protocols only describe
the shapes the core relies on.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from .credentials import CredentialDraft
    from .session import ClientSession


class MessageHandler(Protocol):
    def __call__(self, message: Any, session: Optional["ClientSession"]) -> None: ...


class ConnectHook(Protocol):
    def __call__(self, session: "ClientSession") -> None: ...


class EventEmitter(Protocol):
    def __call__(self, remaining: int, session: "ClientSession") -> None: ...


class AuthOverride(Protocol):
    def __call__(self, index: int, credential: "CredentialDraft") -> None: ...


@dataclass
class SimulatorHooks:
    on_connect: Optional[ConnectHook] = None
    on_event: Optional[EventEmitter] = None
    on_auth: Optional[AuthOverride] = None
