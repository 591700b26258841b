"""
Broker Service - Main orchestration layer.

Mediates between automation clients (WebSocket) and one tool server
process (stdio).

Responsibilities:
- Spawn the tool server
- Accept client connections
- Route client frames: Clients → Router → Tool server / other clients
- Broadcast tool server output: Tool server → all clients
"""

import asyncio
import signal
from datetime import datetime
from typing import Callable, Optional

from mcp_broker.adapters.base import BaseProcessAdapter
from mcp_broker.adapters.stdio_adapter import StdioProcessAdapter
from mcp_broker.adapters.websocket_adapter import WebSocketAdapter
from mcp_broker.broadcaster import Broadcaster
from mcp_broker.config import RestartPolicy, Settings
from mcp_broker.logger import get_logger
from mcp_broker.registry import ClientRegistry
from mcp_broker.router import MessageRouter


logger = get_logger(__name__)


class BrokerService:
    """
    Broker orchestrating data flow.

    Architecture:
        Clients (WebSocket) ↔ BrokerService ↔ Tool server (stdio)

    Data Flow:
        1. Client frame: WebSocket → Router → registry / fan-out / stdin
        2. Tool output:  stdout line → Broadcaster → every client

    A tool server that fails to start or dies does not stop the broker;
    clients stay connected and forwarding becomes inert.
    """

    def __init__(self,
                 settings: Optional[Settings] = None,
                 process_adapter: Optional[BaseProcessAdapter] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize Broker Service.

        Args:
            settings: Broker settings (default: Settings())
            process_adapter: Tool server adapter (default: stdio subprocess)
            clock: UTC clock for persisted artifact names
        """
        self.settings = settings or Settings()

        self.registry = ClientRegistry()
        self.broadcaster = Broadcaster(self.registry)

        if process_adapter is None:
            process_adapter = StdioProcessAdapter(
                self.settings.command,
                restart_policy=self.settings.restart_policy,
                restart_delay=self.settings.restart_delay,
                restart_max_delay=self.settings.restart_max_delay
            )
        self.process = process_adapter
        self.process.on_line = self.broadcaster.broadcast_all

        self.router = MessageRouter(
            self.registry,
            self.broadcaster,
            self.process,
            content_dir=self.settings.content_dir,
            clock=clock
        )

        self.frontend_adapter = WebSocketAdapter(
            self.registry,
            self.router,
            host=self.settings.host,
            port=self.settings.port
        )

        self.running = False

    @property
    def port(self) -> int:
        return self.frontend_adapter.port

    async def start(self):
        """
        Start Broker Service.

        Steps:
        1. Spawn the tool server
        2. Start the websocket server

        Raises:
            RuntimeError: If the websocket server cannot bind
        """
        logger.info("Starting broker service...")

        if not await self.process.start():
            logger.error("Tool server unavailable, clients will be served but nothing is forwarded")

        await self.frontend_adapter.start()
        self.running = True

    async def run_forever(self):
        """Serve until shutdown() closes the websocket server."""
        await self.frontend_adapter.wait_closed()

    async def restart_process(self) -> bool:
        """Respawn the tool server if it is down (manual restart policy)."""
        restart = getattr(self.process, "restart", None)
        if restart is None:
            logger.warning("Process adapter does not support restart")
            return False

        logger.info("Restart of tool server requested")
        return await restart()

    async def shutdown(self):
        """Shutdown Broker Service and cleanup resources."""
        if not self.running:
            await self.process.close()
            return

        logger.info("Shutting down...")
        self.running = False

        await self.frontend_adapter.close()
        await self.process.close()

        logger.info("Shutdown complete")


async def run_broker_service(settings: Settings):
    """
    Run the broker until SIGINT/SIGTERM.

    With the manual restart policy, SIGHUP respawns the tool server.

    Args:
        settings: Broker settings
    """
    service = BrokerService(settings)
    loop = asyncio.get_running_loop()
    background = set()

    def request_shutdown():
        task = loop.create_task(service.shutdown())
        background.add(task)
        task.add_done_callback(background.discard)

    def request_restart():
        task = loop.create_task(service.restart_process())
        background.add(task)
        task.add_done_callback(background.discard)

    try:
        await service.start()

        try:
            loop.add_signal_handler(signal.SIGTERM, request_shutdown)
            if settings.restart_policy is RestartPolicy.MANUAL:
                loop.add_signal_handler(signal.SIGHUP, request_restart)
        except (NotImplementedError, AttributeError):
            logger.debug("Signal handlers not supported on this platform")

        await service.run_forever()

    finally:
        await service.shutdown()
