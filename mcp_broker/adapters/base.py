"""
Base adapter interface for the child tool process.

The broker only needs three things from the process side: start it,
write one JSON document per line to it, and be told about every line it
prints. Anything honouring this contract can stand in for the real
subprocess (tests use an in-memory recorder).
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional


LineCallback = Callable[[str], None]


class BaseProcessAdapter(ABC):
    """
    Abstract interface for line-framed process communication.

    Responsibilities:
    - Start and supervise exactly one child process
    - Frame its output into lines and hand each one to on_line
    - Serialize outbound documents as single lines
    """

    def __init__(self, on_line: Optional[LineCallback] = None):
        self.on_line = on_line

    @abstractmethod
    async def start(self) -> bool:
        """
        Start the child process.

        Returns:
            True if the process is running, False if it failed to spawn
        """
        pass

    @abstractmethod
    def write_line(self, document: Any) -> bool:
        """
        Serialize document and write it followed by a newline.

        Fire-and-forget: nothing is awaited and nothing is raised.

        Returns:
            True if the line was handed to the process, False if dropped
        """
        pass

    @abstractmethod
    def is_running(self) -> bool:
        """
        Check if the child process is alive.

        Returns:
            True if running, False otherwise
        """
        pass

    @abstractmethod
    async def close(self):
        """Stop the child process and cleanup resources."""
        pass
