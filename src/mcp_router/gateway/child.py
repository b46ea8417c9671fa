"""
Child Process Wrapper.

Owns exactly one spawned MCP server and its newline-delimited JSON-RPC
stream. The rest of the gateway depends only on the ChildChannel
protocol, so an in-process fake can stand in for a real subprocess.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from ..core.errors import ChildStartupFailure, WriteError
from ..core.jsonrpc import is_valid_message
from .config import ServerDescriptor

logger = structlog.get_logger("mcp-router.child")

# Large tool results (base64 images) arrive as a single line
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 50
EXIT_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ChildExited:
    """Exit event for a child process."""
    code: int | None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> ChildExited:
        if returncode is not None and returncode < 0:
            return cls(code=None, signal=-returncode)
        return cls(code=returncode)

    def describe(self) -> str:
        if self.signal is not None:
            return f"killed by signal {self.signal}"
        return f"exited with code {self.code}"


class ChildChannel(Protocol):
    """Framed JSON-RPC message channel to one child server."""

    server_id: str

    async def start(self) -> None:
        """Launch the child. Returns once it exists, not once it is ready."""

    async def send(self, message: dict[str, Any]) -> None:
        """Write one message. Raises WriteError if the child cannot receive."""

    def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Parsed messages from the child, ending when it exits."""

    async def wait(self) -> ChildExited:
        """Wait for the child to exit."""

    async def stop(self, grace: float = 5.0) -> None:
        """Terminate the child, escalating to a kill after grace seconds."""

    @property
    def stderr_tail(self) -> list[str]:
        """Most recent diagnostic lines."""


ChannelFactory = Callable[[ServerDescriptor], ChildChannel]


class StdioChild:
    """A child MCP server spoken to over its stdin/stdout pipes.

    stderr is drained continuously into the log at DEBUG level (and a
    short in-memory tail) so a chatty child can never fill the pipe and
    stall.
    """

    def __init__(self, descriptor: ServerDescriptor, *, stream_limit: int = STREAM_LIMIT) -> None:
        self.descriptor = descriptor
        self.server_id = descriptor.id
        self._stream_limit = stream_limit
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[ChildExited] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    async def start(self) -> None:
        if self._proc is not None:
            return

        argv = self.descriptor.argv
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.descriptor.to_env_dict(),
                cwd=self.descriptor.cwd,
                limit=self._stream_limit,
                start_new_session=True,
            )
        except OSError as e:
            raise ChildStartupFailure(self.server_id, f"cannot spawn {argv[0]!r}: {e}") from e

        logger.info(
            "Child process started",
            server=self.server_id,
            pid=self._proc.pid,
            command=" ".join(argv),
        )

        self._stderr_task = asyncio.create_task(
            self._drain_stderr(), name=f"{self.server_id}-stderr"
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(), name=f"{self.server_id}-exit"
        )

    async def _drain_stderr(self) -> None:
        assert self._proc and self._proc.stderr
        stream = self._proc.stderr
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Over-long line; the reader already discarded it
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("child stderr", server=self.server_id, line=text)

    async def _watch_exit(self) -> ChildExited:
        assert self._proc
        proc = self._proc
        # Process.wait() also waits for the pipes to close, which a
        # backgrounded descendant can hold open long after the child died.
        waiter = asyncio.ensure_future(proc.wait())
        try:
            while not waiter.done() and proc.returncode is None:
                await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
        finally:
            if not waiter.done():
                waiter.cancel()
        exited = ChildExited.from_returncode(proc.returncode)
        logger.info("Child process exited", server=self.server_id, status=exited.describe())
        return exited

    async def send(self, message: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise WriteError(self.server_id, "process not started")
        if proc.returncode is not None:
            raise WriteError(self.server_id, ChildExited.from_returncode(proc.returncode).describe())
        if proc.stdin.is_closing():
            raise WriteError(self.server_id)

        data = (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise WriteError(self.server_id, str(e) or type(e).__name__) from e

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        stream = proc.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning(
                    "Skipping over-long line from child",
                    server=self.server_id,
                    limit=self._stream_limit,
                )
                continue
            if not line:
                return

            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                msg = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed line from child", server=self.server_id, line=text[:200])
                continue
            if not is_valid_message(msg):
                logger.warning("Skipping non JSON-RPC message from child", server=self.server_id, line=text[:200])
                continue
            yield msg

    async def wait(self) -> ChildExited:
        if self._exit_task is None:
            msg = f"Child '{self.server_id}' was never started"
            raise RuntimeError(msg)
        return await asyncio.shield(self._exit_task)

    def _signal_group(self, sig: int) -> None:
        """Signal the child's process group, or the child alone if that fails."""
        assert self._proc
        try:
            os.killpg(self._proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                self._proc.send_signal(sig)

    async def stop(self, grace: float = 5.0) -> None:
        proc = self._proc
        if proc is None:
            return

        assert self._exit_task is not None
        if proc.returncode is None:
            if proc.stdin and not proc.stdin.is_closing():
                proc.stdin.close()
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=grace)
            except TimeoutError:
                logger.warning("Child did not terminate, killing", server=self.server_id, grace=grace)
                self._signal_group(signal.SIGKILL)

        await self._exit_task
        # Leftover descendants would keep stdout open
        self._signal_group(signal.SIGKILL)
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
