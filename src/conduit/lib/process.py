"""Child process lifecycle with a concurrent stderr drain.

A ``ProcessSession`` owns exactly one child process. The child's stdin and
stdout are left untouched for whoever speaks the protocol over them; stderr
is read to end-of-stream by a background task so a chatty child can never
fill the pipe and stall the protocol channel.

Killing signals the whole process group (POSIX children are started in
their own session), waits ``kill_timeout`` seconds for a graceful exit and
then escalates to SIGKILL.

Examples:
    Run a command and collect its stderr::

        >>> lines: list[str] = []
        >>> async with ProcessSession(stderr_sink=lines.append) as proc:
        ...     await proc.start(ChildProcessDescriptor(command="ls", args=("-z",)))
        ...     await proc.wait()
        2
"""

import asyncio
import logging
import os
import signal
import threading
from collections.abc import Callable, Mapping
from types import TracebackType
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from conduit.lib.errors import AlreadyStartedError, InvalidStateError, SpawnError

logger = logging.getLogger(__name__)

DiagnosticSink = Callable[[str], None]
"""Receives one decoded stderr line at a time (without the line ending)."""

DEFAULT_KILL_TIMEOUT = 5.0
STREAM_LIMIT = 1 << 20
"""Longest stderr line (bytes) forwarded to the sink; longer lines are dropped."""


class ChildProcessDescriptor(BaseModel):
    """What to launch. Arguments are passed as distinct tokens, never through a shell.

    ``env`` accepts any mapping and is stored as a tuple of pairs, so the
    descriptor cannot change after it is handed to a ``ProcessSession``.
    """

    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1, description="Executable name or path")
    args: tuple[str, ...] = Field(default=(), description="Ordered argument list")
    env: tuple[tuple[str, str], ...] | None = Field(
        default=None, description="Overrides merged over the parent environment"
    )
    cwd: str | None = None

    @field_validator("env", mode="before")
    @classmethod
    def freeze_env(cls, value: object) -> object:
        if isinstance(value, Mapping):
            return tuple(value.items())
        return value

    def merged_env(self) -> dict[str, str] | None:
        """Parent environment with overrides applied, or None to inherit as-is."""
        if self.env is None:
            return None
        return {**os.environ, **dict(self.env)}

    def display(self) -> str:
        return " ".join((self.command, *self.args))


class ProcessHandle:
    """The running child and its three standard streams."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter:
        assert self.process.stdin is not None
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process.stdout is not None
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self.process.stderr is not None
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def has_exited(self) -> bool:
        return self.process.returncode is not None


class ProcessSession:
    """Start, wait for and kill one child process.

    Args:
        stderr_sink: Called with every stderr line. Without a sink the lines
            are logged at DEBUG; draining happens either way.
        kill_timeout: Seconds to wait after SIGTERM before sending SIGKILL.
    """

    def __init__(
        self,
        *,
        stderr_sink: DiagnosticSink | None = None,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.stderr_sink = stderr_sink
        self.kill_timeout = kill_timeout
        self.handle: ProcessHandle | None = None
        self.drain_task: asyncio.Task[None] | None = None
        self._lock = threading.Lock()
        self._start_claimed = False
        self._kill_claimed = False

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None

    @property
    def returncode(self) -> int | None:
        return self.handle.returncode if self.handle is not None else None

    @property
    def is_running(self) -> bool:
        return self.handle is not None and not self.handle.has_exited

    async def start(self, descriptor: ChildProcessDescriptor) -> ProcessHandle:
        """Spawn the child and begin draining its stderr.

        Raises:
            AlreadyStartedError: If this session already started a process.
            SpawnError: If the executable could not be launched.
        """
        with self._lock:
            if self._start_claimed:
                raise AlreadyStartedError("Process is already started.")
            self._start_claimed = True

        logger.info("Starting external process: %s", descriptor.display())
        try:
            process = await asyncio.create_subprocess_exec(
                descriptor.command,
                *descriptor.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=descriptor.merged_env(),
                cwd=descriptor.cwd,
                start_new_session=os.name == "posix",
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to start process %s: %s", descriptor.command, e)
            raise SpawnError(descriptor.command, str(e)) from e

        self.handle = ProcessHandle(process)
        self.drain_task = asyncio.create_task(
            self._drain_stderr(self.handle.stderr),
            name=f"stderr-drain-{process.pid}",
        )
        logger.debug("Process %s started with pid %d", descriptor.command, process.pid)
        return self.handle

    async def wait(self, timeout: float | None = None) -> int:
        """Wait for the child to exit and return its exit code.

        If the wait is cancelled or ``timeout`` elapses, the child is killed
        before the ``CancelledError``/``TimeoutError`` propagates.
        """
        handle = self._require_handle()
        try:
            returncode = await asyncio.wait_for(handle.process.wait(), timeout)
        except (asyncio.CancelledError, TimeoutError):
            await self.kill()
            raise
        await self._finish_drain()
        return returncode

    async def kill(self) -> None:
        """Terminate the process tree; a no-op if never started or already dead.

        Only the first caller signals; later callers just observe the exit.
        Returns once the child is reported exited.
        """
        handle = self.handle
        if handle is None:
            return
        if not self._claim_kill():
            await handle.process.wait()
            return

        if handle.has_exited:
            if os.name == "posix":
                # the leader is gone but the rest of its group may not be
                self._signal(handle, hard=False)
        else:
            self._signal(handle, hard=False)
            try:
                await asyncio.wait_for(handle.process.wait(), self.kill_timeout)
            except TimeoutError:
                logger.warning(
                    "Process %d still alive %.1fs after SIGTERM, sending SIGKILL",
                    handle.pid,
                    self.kill_timeout,
                )
                self._signal(handle, hard=True)
                await handle.process.wait()
            logger.info("Process %d exited with code %s", handle.pid, handle.returncode)

        await self._finish_drain()

    async def aclose(self) -> None:
        await self.kill()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.kill()

    # --- internals ---

    def _require_handle(self) -> ProcessHandle:
        if self.handle is None:
            raise InvalidStateError("Process has not been started.")
        return self.handle

    def _claim_kill(self) -> bool:
        with self._lock:
            if self._kill_claimed:
                return False
            self._kill_claimed = True
            return True

    def _signal(self, handle: ProcessHandle, *, hard: bool) -> None:
        try:
            if os.name == "posix":
                os.killpg(handle.pid, signal.SIGKILL if hard else signal.SIGTERM)
            elif hard:
                handle.process.kill()
            else:
                handle.process.terminate()
        except ProcessLookupError:
            logger.debug("Process group %d already gone", handle.pid)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning(
                    "Dropped stderr line longer than %d bytes from pid %s",
                    STREAM_LIMIT,
                    self.pid,
                )
                continue
            if not line:
                return
            self._emit(line.decode("utf-8", errors="replace").rstrip("\r\n"))

    def _emit(self, text: str) -> None:
        if self.stderr_sink is None:
            logger.debug("Process stderr: %s", text)
            return
        try:
            self.stderr_sink(text)
        except Exception:
            logger.exception("stderr sink raised; line was: %s", text)

    async def _finish_drain(self) -> None:
        task = self.drain_task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self.kill_timeout)
        if not done:
            # a grandchild outside the process group still holds stderr open
            task.cancel()
