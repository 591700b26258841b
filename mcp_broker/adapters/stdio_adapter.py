"""
Stdio Adapter for the child tool process.

The broker spawns the tool server itself and talks to it over its
standard streams.

Protocol:
- stdin:  one JSON document per line, UTF-8, newline-terminated
- stdout: one JSON document per line, relayed verbatim through on_line
- stderr: diagnostics only, logged under its own logger and never relayed
"""

import asyncio
import json
from typing import Any, List, Optional, Sequence, Set

from .base import BaseProcessAdapter, LineCallback
from mcp_broker.config import RestartPolicy
from mcp_broker.exceptions import ProcessError
from mcp_broker.logger import get_logger


logger = get_logger(__name__)
stderr_logger = get_logger("mcp_broker.child.stderr")

READ_CHUNK_SIZE = 64 * 1024
TERMINATE_TIMEOUT = 5.0


class LineBuffer:
    """
    Splits a byte stream into newline-terminated text lines.

    A line is only released once its terminator has been seen; anything
    after the last terminator is held until the next feed() or flush().
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self.blank_lines = 0
        self._pending = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet released as a line."""
        return len(self._pending)

    def feed(self, chunk: bytes) -> List[str]:
        """
        Append a chunk and return the lines it completed.

        Blank lines are dropped (counted in blank_lines); a trailing
        carriage return is stripped. Each byte is copied a bounded number
        of times, so one very long line is framed in linear time.
        """
        end = chunk.rfind(b"\n")
        if end < 0:
            self._pending.extend(chunk)
            return []

        self._pending.extend(chunk[:end])
        complete = self._pending.split(b"\n")
        self._pending = bytearray(chunk[end + 1:])

        lines = []
        for line in map(self._decode, complete):
            if line.strip():
                lines.append(line)
            else:
                self.blank_lines += 1
                logger.debug("Dropping blank child output line")

        return lines

    def flush(self) -> Optional[str]:
        """Release whatever is buffered (end of stream); None if empty."""
        if not self._pending:
            return None

        line = self._decode(bytes(self._pending))
        self._pending.clear()
        return line if line.strip() else None

    def _decode(self, raw: bytes) -> str:
        return raw.rstrip(b"\r").decode(self.encoding, errors="replace")


def encode_line(document: Any) -> Optional[bytes]:
    """
    Serialize document as one compact UTF-8 JSON line.

    NaN and the infinities are refused since they are not JSON. Strings
    holding lone surrogates cannot be written as UTF-8, so such documents
    fall back to ASCII output where they become \\uXXXX escapes.

    Returns:
        The encoded line with its terminator, or None if it cannot be encoded
    """
    try:
        line = json.dumps(document, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
        return line.encode("utf-8") + b"\n"
    except UnicodeEncodeError:
        line = json.dumps(document, allow_nan=False, separators=(",", ":"))
        return line.encode("ascii") + b"\n"
    except (TypeError, ValueError, RecursionError) as e:
        logger.error(f"Cannot serialize outbound document: {e}")
        return None


class StdioProcessAdapter(BaseProcessAdapter):
    """
    Child process adapter speaking line-delimited JSON over stdio.

    Architecture:
        Broker → stdin  → Tool server
        Broker ← stdout ← Tool server   (framed, on_line per line)
        Broker ← stderr ← Tool server   (logged)

    Restart policies:
    - none:    an exit is logged and the adapter stays inert
    - backoff: respawn after a doubling delay, capped at restart_max_delay
    - manual:  stay inert until restart() is called
    Writes made while the process is down are dropped, never replayed.
    """

    def __init__(self,
                 command: Sequence[str],
                 on_line: Optional[LineCallback] = None,
                 cwd: Optional[str] = None,
                 restart_policy: RestartPolicy = RestartPolicy.NONE,
                 restart_delay: float = 1.0,
                 restart_max_delay: float = 30.0):
        """
        Initialize Stdio Adapter.

        Args:
            command: Child argv
            on_line: Called once per complete stdout line
            cwd: Working directory for the child
            restart_policy: Behaviour after the child exits
            restart_delay: First backoff delay in seconds
            restart_max_delay: Backoff ceiling in seconds
        """
        super().__init__(on_line)

        if not command:
            raise ValueError("command must not be empty")

        self.command = list(command)
        self.cwd = cwd
        self.restart_policy = RestartPolicy(restart_policy)
        self.restart_delay = restart_delay
        self.restart_max_delay = restart_max_delay

        self.process: Optional[asyncio.subprocess.Process] = None
        self.restart_count = 0

        self._tasks: Set[asyncio.Task] = set()
        self._drain_task: Optional[asyncio.Task] = None
        self._next_delay = restart_delay
        self._started_at = 0.0
        self._closing = False

    async def start(self) -> bool:
        """
        Spawn the child process.

        A spawn failure is logged and leaves the adapter inert; the broker
        keeps serving clients either way.

        Returns:
            True if the process is running
        """
        self._closing = False
        return await self._try_spawn()

    async def restart(self) -> bool:
        """
        Spawn the child again if it is not running.

        Returns:
            True if a process is running afterwards
        """
        if self.is_running():
            logger.info(f"Child process {self.process.pid} still running, restart skipped")
            return True

        self._next_delay = self.restart_delay
        self._closing = False
        return await self._try_spawn()

    async def _try_spawn(self) -> bool:
        try:
            await self._spawn()
            return True
        except ProcessError as e:
            logger.error(f"Failed to start child process: {e}")
            return False

    async def _spawn(self):
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd
            )
        except (OSError, ValueError) as e:
            raise ProcessError(str(e), command=self.command)

        self.process = process
        self._started_at = asyncio.get_running_loop().time()

        self._spawn_task(self._read_stdout(process))
        self._spawn_task(self._read_stderr(process))
        self._spawn_task(self._supervise(process))

        logger.info(f"Spawned child process {' '.join(self.command)} with PID {process.pid}")

    def _spawn_task(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _read_stdout(self, process: asyncio.subprocess.Process):
        """Frame stdout into lines and hand each to on_line."""
        buffer = LineBuffer()

        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break

                for line in buffer.feed(chunk):
                    self._emit(line)

        except (ConnectionError, OSError) as e:
            logger.error(f"Error reading child stdout: {e}")

        tail = buffer.flush()
        if tail is not None:
            logger.warning(f"Child stdout ended mid-line, relaying {len(tail)} unterminated chars")
            self._emit(tail)

    def _emit(self, line: str):
        logger.debug(f"Child line: {line[:200]}")

        if self.on_line is None:
            return

        try:
            self.on_line(line)
        except Exception:
            logger.exception("Line callback failed")

    async def _read_stderr(self, process: asyncio.subprocess.Process):
        """Log stderr output line by line."""
        buffer = LineBuffer()

        try:
            while True:
                chunk = await process.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break

                for line in buffer.feed(chunk):
                    stderr_logger.info(line)

        except (ConnectionError, OSError) as e:
            logger.error(f"Error reading child stderr: {e}")

        tail = buffer.flush()
        if tail is not None:
            stderr_logger.info(tail)

    async def _supervise(self, process: asyncio.subprocess.Process):
        """Wait for the child to exit and apply the restart policy."""
        code = await process.wait()
        loop = asyncio.get_running_loop()
        ran_for = loop.time() - self._started_at

        if self._closing:
            logger.info(f"Child process {process.pid} exited with code {code}")
            return

        logger.error(f"Child process {process.pid} exited unexpectedly with code {code} after {ran_for:.1f}s")

        if self.restart_policy is RestartPolicy.NONE:
            logger.warning("Restart policy is 'none', forwarding is inert until the broker is restarted")
            return

        if self.restart_policy is RestartPolicy.MANUAL:
            logger.warning("Restart policy is 'manual', waiting for an explicit restart")
            return

        if ran_for > self.restart_max_delay:
            self._next_delay = self.restart_delay

        while not self._closing:
            delay = self._next_delay
            self._next_delay = min(self._next_delay * 2, self.restart_max_delay)

            logger.info(f"Restarting child process in {delay:.1f}s")
            await asyncio.sleep(delay)

            if self._closing or self.is_running():
                return

            if await self._try_spawn():
                self.restart_count += 1
                return

    def write_line(self, document: Any) -> bool:
        """
        Write document to the child's stdin as one line.

        Returns:
            True if handed to the process, False if dropped
        """
        if not self.is_running():
            logger.warning("Child process not running, dropping outbound line")
            return False

        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            logger.warning("Child stdin closed, dropping outbound line")
            return False

        data = encode_line(document)
        if data is None:
            return False

        try:
            stdin.write(data)
        except (ConnectionError, RuntimeError) as e:
            logger.error(f"Error writing to child stdin: {e}")
            return False

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = self._spawn_task(self._drain(stdin))

        return True

    async def _drain(self, stdin: asyncio.StreamWriter):
        try:
            await stdin.drain()
        except (ConnectionError, RuntimeError) as e:
            logger.error(f"Error flushing child stdin: {e}")

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def close(self):
        """Terminate the child process and stop the reader tasks."""
        self._closing = True
        await self._terminate(self.process)

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # A backoff respawn may have completed while we were terminating
        await self._terminate(self.process)

        logger.info("Stdio adapter closed")

    async def _terminate(self, process: Optional[asyncio.subprocess.Process]):
        if process is None or process.returncode is not None:
            return

        logger.info(f"Stopping child process {process.pid}...")

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning(f"Child process {process.pid} ignored SIGTERM, killing")
            process.kill()
            await process.wait()
