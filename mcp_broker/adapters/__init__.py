"""
Broker Adapters - Process-side communication interfaces.

Available Adapters:
- BaseProcessAdapter: Abstract interface for line-framed tool server communication
- StdioProcessAdapter: Subprocess over stdin/stdout (mcp_broker.adapters.stdio_adapter)
- WebSocketAdapter: Client-facing server (mcp_broker.adapters.websocket_adapter)
"""

from .base import BaseProcessAdapter

__all__ = [
    'BaseProcessAdapter',
]
