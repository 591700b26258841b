"""
Settings - Broker configuration loaded from the environment.

Values come from (lowest to highest precedence):
    1. Dataclass defaults
    2. Environment variables (optionally seeded from a .env file)
    3. Command line flags (applied by mcp_broker.main)
"""

import os
import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from mcp_broker.exceptions import ConfigurationError


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_CONTENT_DIR = "context-data"
FILESYSTEM_SERVER_PACKAGE = "@modelcontextprotocol/server-filesystem"


class RestartPolicy(str, Enum):
    """What the stdio adapter does after the child process exits."""

    NONE = "none"
    BACKOFF = "backoff"
    MANUAL = "manual"


def default_command(content_dir: str) -> List[str]:
    """Command line of the filesystem tool server rooted at content_dir."""
    return ["npx", "-y", FILESYSTEM_SERVER_PACKAGE, content_dir]


@dataclass
class Settings:
    """
    Broker settings.

    Attributes:
        host: Interface the websocket server binds to
        port: Websocket server port (0 picks a free port)
        content_dir: Content store directory, relative to the child's cwd
        command: Child process argv; defaults to the filesystem tool server
        restart_policy: Child restart behaviour after an exit
        restart_delay: First backoff delay in seconds
        restart_max_delay: Upper bound for the backoff delay in seconds
        log_level: Root log level
        log_file: Optional log file path
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    content_dir: str = DEFAULT_CONTENT_DIR
    command: List[str] = field(default_factory=list)
    restart_policy: RestartPolicy = RestartPolicy.NONE
    restart_delay: float = 1.0
    restart_max_delay: float = 30.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Fill derived defaults and validate."""
        if not self.command:
            self.command = default_command(self.content_dir)

        if isinstance(self.restart_policy, str):
            self.restart_policy = _parse_policy(self.restart_policy)

        self._validate()

    def _validate(self) -> None:
        errors = []
        keys = []

        if not 0 <= self.port <= 65535:
            errors.append(f"port out of range: {self.port}")
            keys.append("MCP_PROXY_PORT")

        if not self.content_dir:
            errors.append("content_dir must not be empty")
            keys.append("MCP_CONTENT_DIR")

        if self.restart_delay <= 0:
            errors.append("restart_delay must be positive")
            keys.append("MCP_RESTART_DELAY")

        if self.restart_max_delay < self.restart_delay:
            errors.append("restart_max_delay must be >= restart_delay")
            keys.append("MCP_RESTART_MAX_DELAY")

        if errors:
            raise ConfigurationError("; ".join(errors), keys=keys)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env_file: Explicit .env path; defaults to ./.env when present

        Returns:
            Validated Settings

        Raises:
            ConfigurationError: If a value cannot be parsed or is invalid
        """
        load_environment(env_file)

        content_dir = os.getenv("MCP_CONTENT_DIR", DEFAULT_CONTENT_DIR)

        raw_command = os.getenv("MCP_SERVER_COMMAND", "")
        command = shlex.split(raw_command) if raw_command.strip() else []

        return cls(
            host=os.getenv("MCP_PROXY_HOST", DEFAULT_HOST),
            port=_env_int("MCP_PROXY_PORT", DEFAULT_PORT),
            content_dir=content_dir,
            command=command,
            restart_policy=_parse_policy(os.getenv("MCP_RESTART_POLICY", "none")),
            restart_delay=_env_float("MCP_RESTART_DELAY", 1.0),
            restart_max_delay=_env_float("MCP_RESTART_MAX_DELAY", 30.0),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with the non-None changes applied."""
        changes = {key: value for key, value in changes.items() if value is not None}

        # A new content dir moves the default command along with it
        if "content_dir" in changes and "command" not in changes:
            if self.command == default_command(self.content_dir):
                changes["command"] = default_command(changes["content_dir"])

        return replace(self, **changes)


def load_environment(env_file: Optional[str] = None) -> None:
    """
    Load variables from a .env file without overriding the process environment.

    Args:
        env_file: Path to .env file (optional)
    """
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"

    if env_path.exists():
        load_dotenv(env_path, override=False)
    elif env_file:
        raise ConfigurationError(f"Environment file not found: {env_file}")


def _parse_policy(value: str) -> RestartPolicy:
    try:
        return RestartPolicy(value.strip().lower())
    except ValueError:
        choices = ", ".join(policy.value for policy in RestartPolicy)
        raise ConfigurationError(
            f"Unknown restart policy {value!r} (expected one of: {choices})",
            keys=["MCP_RESTART_POLICY"]
        )


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)

    if value is None or not value.strip():
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}", keys=[key])


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)

    if value is None or not value.strip():
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {value!r}", keys=[key])
