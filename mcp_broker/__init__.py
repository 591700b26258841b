"""
MCP Broker - Shares one stdio tool server between websocket automation clients.

Components:
- BrokerService: Main orchestrator
- ClientRegistry: Connections and their declared roles
- MessageRouter: Frame classification and routing policy
- Broadcaster: Fan-out to client connections
- Adapters: stdio tool server, websocket server
"""

__version__ = "0.1.0"

from .service import BrokerService, run_broker_service
from .registry import ClientRegistry, ClientInfo, ClientType, Role
from .router import MessageRouter, MessageKind, classify
from .broadcaster import Broadcaster
from .config import Settings, RestartPolicy

__all__ = [
    'BrokerService',
    'run_broker_service',
    'ClientRegistry',
    'ClientInfo',
    'ClientType',
    'Role',
    'MessageRouter',
    'MessageKind',
    'classify',
    'Broadcaster',
    'Settings',
    'RestartPolicy',
]
