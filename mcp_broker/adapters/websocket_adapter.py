"""
WebSocket Adapter for client connections.

Accepts any number of concurrent clients (webhook receiver, comment bots,
AI reviewer). Every text or binary frame is handed to the MessageRouter;
each connection is registered on accept and removed on close or error.
"""

from typing import Optional

from websockets.asyncio.server import Server, serve
from websockets.exceptions import ConnectionClosed

from mcp_broker.logger import get_logger
from mcp_broker.registry import ClientRegistry
from mcp_broker.router import MessageRouter


logger = get_logger(__name__)


class WebSocketAdapter:
    """
    WebSocket server adapter.

    Architecture:
        Clients ↔ WebSocket ↔ Broker (Server)

    Responsibilities:
    - Accept connections and register them as Unidentified
    - Pass each received frame to the router, in receipt order
    - Remove the connection from the registry when it goes away
    """

    def __init__(self,
                 registry: ClientRegistry,
                 router: MessageRouter,
                 host: str = "0.0.0.0",
                 port: int = 8080,
                 max_size: Optional[int] = None):
        """
        Initialize WebSocket Adapter.

        Args:
            registry: Connection registry
            router: Routing policy for received frames
            host: Server host
            port: Server port (0 picks a free port)
            max_size: Max frame size in bytes (None for no limit)
        """
        self.registry = registry
        self.router = router
        self.host = host
        self.port = port
        self.max_size = max_size

        self.server: Optional[Server] = None

    async def start(self):
        """
        Start listening.

        Raises:
            RuntimeError: If the server fails to bind
        """
        logger.info(f"Starting websocket server on {self.host}:{self.port}...")

        try:
            self.server = await serve(
                self._handle_connection,
                self.host,
                self.port,
                max_size=self.max_size
            )
        except OSError as e:
            raise RuntimeError(f"Failed to start websocket server: {e}")

        # Report the real port when an ephemeral one was requested
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"WebSocket broker listening on ws://{self.host}:{self.port}")

    async def _handle_connection(self, websocket):
        """
        Serve one client connection until it closes.

        Args:
            websocket: Accepted connection
        """
        peer = websocket.remote_address
        client_id = self.registry.register(websocket)
        logger.debug(f"Client {client_id} peer: {peer}")

        try:
            async for message in websocket:
                try:
                    self.router.handle(client_id, message)
                except Exception:
                    logger.exception(f"Error routing frame from {client_id}")

        except ConnectionClosed as e:
            logger.warning(f"Connection {client_id} closed abnormally: {e}")

        finally:
            self.registry.remove(client_id)

    async def wait_closed(self):
        """Block until the server has been closed."""
        if self.server is not None:
            await self.server.wait_closed()

    async def close(self):
        """Stop accepting and close every client connection."""
        if self.server is None:
            return

        logger.info("Closing websocket server...")
        self.server.close()
        await self.server.wait_closed()
        logger.info("WebSocket server closed")
