"""
Exceptions - Error types raised inside the broker.

None of these are allowed to escape a connection callback or the child
output callback; they are raised close to the fault and turned into log
lines by the component that owns it.
"""

from typing import Optional, Dict, Any


class BrokerError(Exception):
    """
    Base exception for all broker errors.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "BROKER_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigurationError(BrokerError):
    """
    Raised when settings are missing or invalid.
    """

    def __init__(self, message: str, keys: Optional[list] = None):
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"keys": keys or []}
        )


class ProtocolError(BrokerError):
    """
    Raised when a client frame cannot be decoded into a JSON document.
    """

    def __init__(self, message: str, client_id: Optional[str] = None):
        super().__init__(
            message=message,
            code="PROTOCOL_ERROR",
            details={"client_id": client_id}
        )
        self.client_id = client_id


class ProcessError(BrokerError):
    """
    Raised when the child process cannot be spawned.
    """

    def __init__(self, message: str, command: Optional[list] = None):
        super().__init__(
            message=message,
            code="PROCESS_ERROR",
            details={"command": command or []}
        )
