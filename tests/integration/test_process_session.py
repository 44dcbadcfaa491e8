"""Integration tests for ProcessSession against real child processes.

Children are Python one-liners run with the current interpreter.
"""

import asyncio
import os
import signal
import sys
import time

import pytest

from conduit.lib.errors import AlreadyStartedError, InvalidStateError, SpawnError
from conduit.lib.process import STREAM_LIMIT, ChildProcessDescriptor, ProcessSession

pytestmark = pytest.mark.integration

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses POSIX signals")


def python(code: str, **kwargs: object) -> ChildProcessDescriptor:
    return ChildProcessDescriptor(command=sys.executable, args=("-c", code), **kwargs)  # type: ignore[arg-type]


READY_THEN_SLEEP = "import sys, time; print('ready', flush=True); time.sleep(60)"


class TestStartAndWait:
    """Spawning, exit codes and stderr forwarding."""

    @pytest.mark.asyncio
    async def test_exit_code(self) -> None:
        async with ProcessSession() as proc:
            await proc.start(python("import sys; sys.exit(3)"))
            assert await proc.wait(timeout=10) == 3
            assert not proc.is_running

    @pytest.mark.asyncio
    async def test_nonexistent_executable(self) -> None:
        proc = ProcessSession()
        with pytest.raises(SpawnError) as excinfo:
            await proc.start(ChildProcessDescriptor(command="/nonexistent/conduit-test-binary"))
        assert excinfo.value.command == "/nonexistent/conduit-test-binary"
        assert proc.handle is None
        await proc.kill()

    @pytest.mark.asyncio
    async def test_second_start_rejected(self) -> None:
        async with ProcessSession() as proc:
            await proc.start(python("pass"))
            with pytest.raises(AlreadyStartedError):
                await proc.start(python("pass"))
            await proc.wait(timeout=10)

    @pytest.mark.asyncio
    async def test_wait_before_start_rejected(self) -> None:
        with pytest.raises(InvalidStateError):
            await ProcessSession().wait()

    @pytest.mark.asyncio
    async def test_stderr_lines_reach_sink(self) -> None:
        lines: list[str] = []
        async with ProcessSession(stderr_sink=lines.append) as proc:
            await proc.start(
                python("import sys; print('first', file=sys.stderr); print('second', file=sys.stderr)")
            )
            await proc.wait(timeout=10)
        assert lines == ["first", "second"]

    @pytest.mark.asyncio
    async def test_env_overrides_merge_over_parent(self) -> None:
        async with ProcessSession() as proc:
            handle = await proc.start(
                python(
                    "import os; print(os.environ['CONDUIT_TEST_VALUE'], 'PATH' in os.environ)",
                    env={"CONDUIT_TEST_VALUE": "42"},
                )
            )
            line = await asyncio.wait_for(handle.stdout.readline(), 10)
            await proc.wait(timeout=10)
        assert line.decode().split() == ["42", "True"]

    @pytest.mark.asyncio
    async def test_high_volume_stderr_does_not_stall_stdout(self) -> None:
        lines: list[str] = []
        code = (
            "import sys\n"
            "for _ in range(5000): sys.stderr.write('x' * 1000 + '\\n')\n"
            "sys.stderr.flush()\n"
            "print('done', flush=True)\n"
            "sys.stdin.read()\n"
        )
        async with ProcessSession(stderr_sink=lines.append) as proc:
            handle = await proc.start(python(code))
            line = await asyncio.wait_for(handle.stdout.readline(), 20)
            assert line == b"done\n"
        assert len(lines) == 5000

    @pytest.mark.asyncio
    async def test_overlong_stderr_line_is_dropped(self) -> None:
        lines: list[str] = []
        code = (
            "import sys\n"
            f"sys.stderr.write('y' * {STREAM_LIMIT * 3} + '\\n')\n"
            "sys.stderr.write('after\\n')\n"
        )
        async with ProcessSession(stderr_sink=lines.append) as proc:
            await proc.start(python(code))
            assert await proc.wait(timeout=20) == 0
        assert lines[-1] == "after"
        assert all(len(line) <= STREAM_LIMIT for line in lines)

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_draining(self) -> None:
        seen: list[str] = []

        def sink(line: str) -> None:
            seen.append(line)
            raise RuntimeError("sink broke")

        async with ProcessSession(stderr_sink=sink) as proc:
            await proc.start(python("import sys; print('a', file=sys.stderr); print('b', file=sys.stderr)"))
            await proc.wait(timeout=10)
        assert seen == ["a", "b"]


class TestKill:
    """Termination is idempotent and bounded."""

    @pytest.mark.asyncio
    async def test_kill_never_started_is_noop(self) -> None:
        await ProcessSession().kill()

    @posix_only
    @pytest.mark.asyncio
    async def test_graceful_kill(self) -> None:
        proc = ProcessSession(kill_timeout=5)
        handle = await proc.start(python(READY_THEN_SLEEP))
        await asyncio.wait_for(handle.stdout.readline(), 10)

        await proc.kill()

        assert handle.has_exited
        assert proc.returncode == -signal.SIGTERM

    @posix_only
    @pytest.mark.asyncio
    async def test_forced_kill_when_sigterm_ignored(self) -> None:
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )
        proc = ProcessSession(kill_timeout=0.5)
        handle = await proc.start(python(code))
        await asyncio.wait_for(handle.stdout.readline(), 10)

        started = time.monotonic()
        await proc.kill()
        elapsed = time.monotonic() - started

        assert handle.has_exited
        assert proc.returncode == -signal.SIGKILL
        assert elapsed < 5

    @pytest.mark.asyncio
    async def test_concurrent_kills_signal_once(self) -> None:
        proc = ProcessSession(kill_timeout=5)
        handle = await proc.start(python(READY_THEN_SLEEP))
        await asyncio.wait_for(handle.stdout.readline(), 10)

        signals: list[bool] = []
        original = proc._signal

        def spy(h, *, hard):  # type: ignore[no-untyped-def]
            signals.append(hard)
            original(h, hard=hard)

        proc._signal = spy  # type: ignore[method-assign]
        await asyncio.gather(proc.kill(), proc.kill())
        await proc.kill()

        assert handle.has_exited
        assert signals == [False]

    @posix_only
    @pytest.mark.asyncio
    async def test_kill_after_leader_exit_reaches_grandchild(self) -> None:
        code = (
            "import subprocess, sys\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print(child.pid, flush=True)\n"
        )
        proc = ProcessSession(kill_timeout=10)
        handle = await proc.start(python(code))
        await asyncio.wait_for(handle.stdout.readline(), 10)
        await asyncio.wait_for(handle.process.wait(), 10)
        assert proc.drain_task is not None
        assert not proc.drain_task.done()

        started = time.monotonic()
        await proc.kill()
        elapsed = time.monotonic() - started

        assert proc.drain_task.done()
        assert not proc.drain_task.cancelled()
        assert elapsed < 5

    @pytest.mark.asyncio
    async def test_kill_after_exit_is_noop(self) -> None:
        proc = ProcessSession()
        await proc.start(python("pass"))
        assert await proc.wait(timeout=10) == 0
        await proc.kill()
        assert proc.returncode == 0


class TestWaitInterruption:
    """A wait that is abandoned takes the child down with it."""

    @pytest.mark.asyncio
    async def test_wait_timeout_kills(self) -> None:
        proc = ProcessSession(kill_timeout=2)
        await proc.start(python(READY_THEN_SLEEP))
        with pytest.raises(TimeoutError):
            await proc.wait(timeout=0.2)
        assert not proc.is_running

    @pytest.mark.asyncio
    async def test_cancelled_wait_kills(self) -> None:
        proc = ProcessSession(kill_timeout=2)
        handle = await proc.start(python(READY_THEN_SLEEP))
        await asyncio.wait_for(handle.stdout.readline(), 10)

        task = asyncio.create_task(proc.wait())
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert handle.has_exited
