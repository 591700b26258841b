import asyncio
import contextlib
import sys
from datetime import datetime, timezone

import pytest

from mcp_broker.adapters.base import BaseProcessAdapter
from mcp_broker.broadcaster import Broadcaster
from mcp_broker.config import Settings
from mcp_broker.registry import ClientRegistry
from mcp_broker.router import MessageRouter
from mcp_broker.service import BrokerService


FIXED_NOW = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)

ENV_KEYS = [
    "MCP_PROXY_HOST",
    "MCP_PROXY_PORT",
    "MCP_CONTENT_DIR",
    "MCP_SERVER_COMMAND",
    "MCP_RESTART_POLICY",
    "MCP_RESTART_DELAY",
    "MCP_RESTART_MAX_DELAY",
    "LOG_LEVEL",
    "LOG_FILE",
]

# Child that appends every stdin line to the file named by argv[1]
RECORDING_CHILD = """
import sys
with open(sys.argv[1], "a", encoding="utf-8") as out:
    for line in iter(sys.stdin.readline, ""):
        out.write(line)
        out.flush()
"""

# Child that echoes every stdin line back on stdout
ECHO_CHILD = """
import sys
for line in iter(sys.stdin.readline, ""):
    sys.stdout.write(line)
    sys.stdout.flush()
"""


def python_child(script, *args):
    return [sys.executable, "-c", script, *args]


class RecordingProcess(BaseProcessAdapter):
    """In-memory stand-in for the tool server."""

    def __init__(self, running=True):
        super().__init__()
        self.running = running
        self.lines = []

    async def start(self):
        return self.running

    def write_line(self, document):
        if not self.running:
            return False
        self.lines.append(document)
        return True

    def is_running(self):
        return self.running

    async def close(self):
        self.running = False

    def emit(self, line):
        self.on_line(line)


class RecordingDeliver:
    """Replaces websockets broadcast(); remembers who got what."""

    def __init__(self):
        self.calls = []

    def __call__(self, handles, message):
        self.calls.append((list(handles), message))

    def received(self, handle):
        return [message for handles, message in self.calls if handle in handles]


async def wait_for_condition(predicate, timeout=5.0, interval=0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@contextlib.asynccontextmanager
async def running_broker(command, **settings):
    service = BrokerService(Settings(host="127.0.0.1", port=0, command=command, **settings))
    await service.start()
    try:
        yield service
    finally:
        await service.shutdown()


@pytest.fixture
def registry():
    return ClientRegistry()


@pytest.fixture
def deliveries():
    return RecordingDeliver()


@pytest.fixture
def broadcaster(registry, deliveries):
    return Broadcaster(registry, deliver=deliveries)


@pytest.fixture
def process():
    return RecordingProcess()


@pytest.fixture
def router(registry, broadcaster, process):
    return MessageRouter(registry, broadcaster, process, clock=lambda: FIXED_NOW)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # setenv first so monkeypatch restores the original absence afterwards
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return tmp_path
