"""Server session: one child process, one channel, one protocol server.

Lifecycle::

    CREATED --start()--> STARTING --ok--> RUNNING --aclose()--> DISPOSING --> DISPOSED
                             |
                             +--spawn/setup failure or cancellation--> FAILED --aclose()--> DISPOSED

The process handle and the protocol server are established together or
not at all, so a session is never half-started. Disposal is monotonic
and idempotent: it releases the protocol server, closes the channel and
kills the process, and every step runs even if an earlier one failed.
Failures are logged and kept in ``diagnostics``; ``aclose()`` never
raises them, because it usually runs while another error is unwinding.
"""

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum
from types import TracebackType
from typing import Literal, NamedTuple, Protocol, Self

from pydantic import BaseModel

from conduit.lib.channel import StdioChannel
from conduit.lib.errors import InvalidStateError
from conduit.lib.mcp import McpProtocolServer
from conduit.lib.process import (
    DEFAULT_KILL_TIMEOUT,
    ChildProcessDescriptor,
    DiagnosticSink,
    ProcessHandle,
    ProcessSession,
)
from conduit.lib.scope import Releasable, as_releasable
from conduit.lib.tools import ToolRegistry

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    DISPOSING = "disposing"
    DISPOSED = "disposed"
    FAILED = "failed"


class ProtocolServer(Releasable, Protocol):
    """What a session needs from the protocol layer."""

    async def run(self) -> None: ...


ServerFactory = Callable[[StdioChannel], ProtocolServer | Awaitable[ProtocolServer]]


class DisposalFailure(BaseModel):
    """One step of disposal that raised."""

    step: Literal["server", "channel", "process"]
    error: str


class _Established(NamedTuple):
    handle: ProcessHandle
    channel: StdioChannel
    server: ProtocolServer


class ServerSession:
    """Runs a protocol server over an external process's stdin/stdout.

    Args:
        descriptor: The process to launch.
        server_factory: Builds the protocol server from the channel. Defaults
            to an MCP server exposing ``registry``.
        registry: Tools for the default MCP server.
        name: Server name. Defaults to ``"External Process (<command>)"``.
        stderr_sink: Receives the child's stderr lines.
        kill_timeout: Grace period between SIGTERM and SIGKILL.
    """

    def __init__(
        self,
        descriptor: ChildProcessDescriptor,
        *,
        server_factory: ServerFactory | None = None,
        registry: ToolRegistry | None = None,
        name: str | None = None,
        stderr_sink: DiagnosticSink | None = None,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.descriptor = descriptor
        self.name = name or f"External Process ({descriptor.command})"
        self.registry = registry
        self.server_factory = server_factory or self._default_server
        self.process = ProcessSession(stderr_sink=stderr_sink, kill_timeout=kill_timeout)
        self.state = SessionState.CREATED
        self.diagnostics: list[DisposalFailure] = []
        self._established: _Established | None = None
        self._lock = threading.Lock()
        self._start_done = asyncio.Event()

    @classmethod
    def from_command(
        cls,
        command: str,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
        **kwargs: object,
    ) -> Self:
        descriptor = ChildProcessDescriptor(command=command, args=tuple(args), env=env)
        return cls(descriptor, **kwargs)  # type: ignore[arg-type]

    def __repr__(self) -> str:
        return f"ServerSession(name={self.name!r}, state={self.state.value})"

    @property
    def server(self) -> ProtocolServer | None:
        return self._established.server if self._established else None

    @property
    def handle(self) -> ProcessHandle | None:
        return self._established.handle if self._established else None

    async def start(self) -> None:
        """Spawn the process and attach the protocol server to its stdio.

        Raises:
            InvalidStateError: If the session is not in CREATED state (or was
                disposed while starting).
            SpawnError: If the process could not be launched.
        """
        with self._lock:
            if self.state is not SessionState.CREATED:
                raise InvalidStateError(f"Cannot start a session that is {self.state}.")
            self.state = SessionState.STARTING

        try:
            try:
                handle = await self.process.start(self.descriptor)
                channel = StdioChannel.for_process(handle)
                built = self.server_factory(channel)
                server = await built if inspect.isawaitable(built) else built
            except BaseException as e:
                logger.error("Failed to start process or create protocol server: %r", e)
                await self.process.kill()
                with self._lock:
                    if self.state is SessionState.STARTING:
                        self.state = SessionState.FAILED
                raise

            established = _Established(handle, channel, server)
            with self._lock:
                abandoned = self.state is SessionState.DISPOSING
                if not abandoned:
                    self._established = established
                    self.state = SessionState.RUNNING

            if abandoned:
                await self._release(established)
                raise InvalidStateError("Session was disposed while starting.")
        finally:
            self._start_done.set()

        logger.info("Session %s running (pid %d)", self.name, handle.pid)

    async def run(self) -> None:
        """Serve until the peer closes the channel, starting first if needed.

        Cancelling ``run()`` disposes the session before re-raising.
        """
        if self.state is SessionState.CREATED:
            await self.start()
        established = self._established
        if self.state is not SessionState.RUNNING or established is None:
            raise InvalidStateError(f"Cannot run a session that is {self.state}.")
        try:
            await established.server.run()
        except asyncio.CancelledError:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        """Dispose the session. Safe to call any number of times, never raises."""
        with self._lock:
            if self.state in (SessionState.DISPOSING, SessionState.DISPOSED):
                return
            previous = self.state
            self.state = SessionState.DISPOSING
            established = self._established
            self._established = None

        if previous is SessionState.STARTING:
            # start() sees DISPOSING and releases what it built
            await self._start_done.wait()
        elif established is not None:
            await self._release(established)

        self.state = SessionState.DISPOSED
        logger.info("Session %s disposed", self.name)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # --- internals ---

    def _default_server(self, channel: StdioChannel) -> McpProtocolServer:
        return McpProtocolServer(channel, name=self.name, registry=self.registry)

    async def _release(self, established: _Established) -> None:
        try:
            await as_releasable(established.server).aclose()
        except Exception as e:
            self._record("server", e)
        try:
            await established.channel.aclose()
        except Exception as e:
            self._record("channel", e)
        try:
            await self.process.kill()
        except Exception as e:
            self._record("process", e)

    def _record(self, step: Literal["server", "channel", "process"], error: Exception) -> None:
        logger.error("Error disposing %s of %s", step, self.name, exc_info=error)
        self.diagnostics.append(DisposalFailure(step=step, error=repr(error)))
