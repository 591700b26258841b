"""
Client Registry - Tracks every open websocket connection and its declared role.

Layout:
    client_id → ClientInfo    (role, name, timestamps, open flag)
    client_id → websocket     (live handle, reached only through resolve())

Routing code only ever sees client ids and ClientInfo records; raw
connection handles stay inside the registry and the Broadcaster.
"""

import itertools
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

from mcp_broker.logger import get_logger


logger = get_logger(__name__)


class ClientType(str, Enum):
    """Declared client categories, using the wire values of `clientType`."""

    UNIDENTIFIED = "unknown"
    WEBHOOK_LISTENER = "webhook-listener"
    AUTO_COMMENTER = "auto-commenter"
    AI_ANALYZER = "ai-analyzer"
    OTHER = "other"


_KNOWN_TYPES = {
    ClientType.WEBHOOK_LISTENER.value: ClientType.WEBHOOK_LISTENER,
    ClientType.AUTO_COMMENTER.value: ClientType.AUTO_COMMENTER,
    ClientType.AI_ANALYZER.value: ClientType.AI_ANALYZER,
}


@dataclass(frozen=True)
class Role:
    """
    Role of a connection.

    `label` is only set for ClientType.OTHER and carries the declared string.
    """

    kind: ClientType
    label: Optional[str] = None

    @classmethod
    def from_declared(cls, declared: Any) -> "Role":
        """
        Map a declared `clientType` value onto a Role.

        Missing, empty, non-string or "unknown" values are Unidentified;
        unrecognised strings become Other(declared).
        """
        if not isinstance(declared, str) or not declared.strip():
            return UNIDENTIFIED

        declared = declared.strip()
        if declared == ClientType.UNIDENTIFIED.value:
            return UNIDENTIFIED

        kind = _KNOWN_TYPES.get(declared)
        if kind is None:
            return cls(ClientType.OTHER, declared)

        return cls(kind)

    @property
    def name(self) -> str:
        return self.label if self.kind is ClientType.OTHER else self.kind.value

    def __str__(self) -> str:
        return self.name


UNIDENTIFIED = Role(ClientType.UNIDENTIFIED)


@dataclass
class ClientInfo:
    """
    Metadata for one connection.

    Attributes:
        client_id: Opaque id assigned at accept time
        role: Current role (Unidentified until an identity frame arrives)
        name: Display name from the identity frame
        connected_at: Accept time (UTC)
        open: False once the connection has closed
    """

    client_id: str
    role: Role = UNIDENTIFIED
    name: str = "unnamed"
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    open: bool = True


class ClientRegistry:
    """
    Registry of live connections.

    Mutated only from connection lifecycle and message callbacks, which
    never interleave on the event loop, so no locking is needed.
    """

    def __init__(self):
        self._clients: Dict[str, ClientInfo] = {}
        self._handles: Dict[str, Any] = {}
        self._sequence = itertools.count(1)

    def register(self, handle: Any) -> str:
        """
        Add a freshly accepted connection.

        Args:
            handle: Live connection object (websocket)

        Returns:
            The new client id
        """
        client_id = f"client-{next(self._sequence)}-{uuid.uuid4().hex[:8]}"

        self._clients[client_id] = ClientInfo(client_id=client_id)
        self._handles[client_id] = handle

        logger.info(f"Client {client_id} connected, total: {len(self._clients)}")
        return client_id

    def set_role(self, client_id: str, role: Role, name: str) -> bool:
        """
        Overwrite role and name of a registered connection.

        Returns:
            False if the connection is no longer registered
        """
        info = self._clients.get(client_id)
        if info is None:
            logger.debug(f"Ignoring role update for departed client {client_id}")
            return False

        info.role = role
        info.name = name
        return True

    def remove(self, client_id: str) -> None:
        """Forget a connection; safe to call more than once."""
        info = self._clients.pop(client_id, None)
        self._handles.pop(client_id, None)

        if info is not None:
            info.open = False
            logger.info(f"Client {client_id} disconnected, total: {len(self._clients)}")

    def get(self, client_id: str) -> Optional[ClientInfo]:
        return self._clients.get(client_id)

    def resolve(self, client_id: str) -> Optional[Any]:
        """Live handle for client_id, or None once it has gone away."""
        return self._handles.get(client_id)

    def snapshot(self) -> Iterator[ClientInfo]:
        """Open connections, iterated over a copy of the current set."""
        return (info for info in list(self._clients.values()) if info.open)

    def by_role(self, predicate: Callable[[Role], bool]) -> Iterator[ClientInfo]:
        """Lazily yield open connections whose role satisfies predicate."""
        return (info for info in self.snapshot() if predicate(info.role))

    def counts_by_role(self) -> Dict[str, int]:
        return dict(Counter(info.role.name for info in self._clients.values()))

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients
