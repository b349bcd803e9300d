"""Per-client identity and authentication material."""

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .hooks import AuthOverride


@dataclass(frozen=True)
class ClientCredential:
    client_id: str
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class CredentialDraft:
    """Mutable credential handed to auth overrides before it is frozen."""

    client_id: str
    username: Optional[str] = None
    password: Optional[str] = None


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class CredentialProvider:
    """
    Produces the credential for each client index.

    The client id is always ``prefix + index``. Without an override the
    username is ``secure_id|<epoch millis>`` and the password is
    ``md5(username|secure_key)``.
    """

    def __init__(self, prefix: str = "test", secure_id: str = "test",
                 secure_key: str = "test",
                 override: Optional[AuthOverride] = None,
                 clock: Callable[[], float] = time.time):
        self.prefix = prefix
        self.secure_id = secure_id
        self.secure_key = secure_key
        self.override = override
        self.clock = clock

    def provide(self, index: int) -> ClientCredential:
        client_id = f"{self.prefix}{index}"
        draft = CredentialDraft(client_id=client_id)
        if self.override is not None:
            self.override(index, draft)
        else:
            draft.username = f"{self.secure_id}|{int(self.clock() * 1000)}"
            draft.password = md5_hex(f"{draft.username}|{self.secure_key}")
        # the client id is fixed even if an override reassigns it
        return ClientCredential(client_id, draft.username, draft.password)
