"""
MCP Broker - Entry Point

Usage:
    python -m mcp_broker.main [OPTIONS]
    mcp-broker [OPTIONS]

Examples:
    # Default configuration (ws://0.0.0.0:8080, content store ./context-data)
    python -m mcp_broker.main

    # Custom port
    python -m mcp_broker.main --port 9000

    # Custom tool server, respawned with backoff when it dies
    python -m mcp_broker.main \
        --command "node ./server.js ./context-data" \
        --restart-policy backoff

Environment variables (also read from ./.env):
    MCP_PROXY_HOST, MCP_PROXY_PORT, MCP_CONTENT_DIR, MCP_SERVER_COMMAND,
    MCP_RESTART_POLICY, MCP_RESTART_DELAY, MCP_RESTART_MAX_DELAY,
    LOG_LEVEL, LOG_FILE
"""

import argparse
import asyncio
import shlex
import sys

from mcp_broker.config import RestartPolicy, Settings
from mcp_broker.exceptions import ConfigurationError
from mcp_broker.logger import get_logger, setup_logger
from mcp_broker.service import run_broker_service


logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="MCP Broker - Shares one tool server between automation clients",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # WebSocket configuration
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="WebSocket server host (default: $MCP_PROXY_HOST or 0.0.0.0)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="WebSocket server port (default: $MCP_PROXY_PORT or 8080)"
    )

    # Tool server configuration
    parser.add_argument(
        "--content-dir",
        type=str,
        default=None,
        help="Content store directory (default: $MCP_CONTENT_DIR or context-data)"
    )

    parser.add_argument(
        "--command",
        type=shlex.split,
        default=None,
        help="Tool server command line (default: filesystem server on the content dir)"
    )

    parser.add_argument(
        "--restart-policy",
        choices=[policy.value for policy in RestartPolicy],
        default=None,
        help="What to do when the tool server exits (default: none)"
    )

    # Logging
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: $LOG_LEVEL or INFO)"
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file"
    )

    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Load environment variables from this file (default: ./.env)"
    )

    return parser.parse_args(argv)


def build_settings(args) -> Settings:
    """Environment settings with command line overrides applied."""
    settings = Settings.from_env(args.env_file)

    return settings.override(
        host=args.host,
        port=args.port,
        content_dir=args.content_dir,
        command=args.command,
        restart_policy=args.restart_policy,
        log_level=args.log_level,
        log_file=args.log_file
    )


def print_banner(settings: Settings):
    """Print startup banner."""
    print("=" * 60)
    print("MCP Broker")
    print("=" * 60)
    print()
    print("Configuration:")
    print(f"  WebSocket:      ws://{settings.host}:{settings.port}")
    print(f"  Content store:  {settings.content_dir}")
    print(f"  Tool server:    {' '.join(settings.command)}")
    print(f"  Restart policy: {settings.restart_policy.value}")
    print()
    print("=" * 60)
    print()


async def main(settings: Settings):
    """Main entry point."""
    await run_broker_service(settings)


def cli(argv=None):
    """Console script entry point."""
    args = parse_args(argv)

    try:
        settings = build_settings(args)
    except ConfigurationError as e:
        print(f"[Main] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logger(settings.log_level, settings.log_file)
    print_banner(settings)

    try:
        asyncio.run(main(settings))

    except KeyboardInterrupt:
        print("\n[Main] Interrupted by user")
        sys.exit(0)

    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    cli()
