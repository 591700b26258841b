"""
Broadcaster - Delivers frames to client connections.

Two fan-outs:
- Child output line → every open connection, whatever its role
- Router fan-out   → open connections selected by a role predicate

Delivery is fire-and-forget through websockets.broadcast(), which skips
connections that are no longer open and never raises on a failed send.
"""

from typing import Any, Callable, Iterable, Optional

from websockets.asyncio.server import broadcast

from mcp_broker.logger import get_logger
from mcp_broker.registry import ClientInfo, ClientRegistry, Role


logger = get_logger(__name__)

Deliver = Callable[[Iterable[Any], str], None]


class Broadcaster:
    """
    Fans frames out to connections tracked by a ClientRegistry.
    """

    def __init__(self, registry: ClientRegistry, deliver: Optional[Deliver] = None):
        """
        Initialize Broadcaster.

        Args:
            registry: Source of connections and their roles
            deliver: Send function taking (handles, message);
                     defaults to websockets broadcast()
        """
        self.registry = registry
        self.deliver = deliver or broadcast

    def broadcast_all(self, line: str) -> int:
        """
        Send a child output line verbatim to every open connection.

        Returns:
            Number of connections addressed
        """
        count = self._send(self.registry.snapshot(), line)
        logger.debug(f"Broadcast child line to {count} client(s)")
        return count

    def fan_out(self,
                message: str,
                predicate: Callable[[Role], bool],
                exclude: Optional[str] = None) -> int:
        """
        Send a frame verbatim to open connections whose role matches.

        Args:
            message: Frame text, forwarded unmodified
            predicate: Role filter
            exclude: Client id that must not receive the frame (the sender)

        Returns:
            Number of connections addressed
        """
        targets = (
            info for info in self.registry.by_role(predicate)
            if info.client_id != exclude
        )
        return self._send(targets, message)

    def _send(self, targets: Iterable[ClientInfo], message: str) -> int:
        handles = []

        for info in targets:
            if not info.open:
                continue

            handle = self.registry.resolve(info.client_id)
            if handle is not None:
                handles.append(handle)

        if handles:
            self.deliver(handles, message)

        return len(handles)
