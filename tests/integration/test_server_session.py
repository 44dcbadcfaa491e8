"""Integration tests for ServerSession with real children and the MCP server."""

import asyncio
import json
import sys

import pytest

from conduit.lib.errors import SpawnError
from conduit.lib.mcp import mcp_server_factory
from conduit.lib.session import ServerSession, SessionState
from conduit.lib.tools import ToolRegistry

pytestmark = pytest.mark.integration

# Speaks MCP over its stdio as a client: handshake, list tools, call two of
# them, and report what came back on stderr.
MCP_CLIENT = r"""
import json, sys

def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()

def request(message):
    send(message)
    return json.loads(sys.stdin.readline())

init = request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {
    "protocolVersion": "2025-06-18",
    "capabilities": {},
    "clientInfo": {"name": "test-client", "version": "0"},
}})
sys.stderr.write("INIT " + json.dumps(init["result"]["serverInfo"]) + "\n")
send({"jsonrpc": "2.0", "method": "notifications/initialized"})

listed = request({"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}})
sys.stderr.write("TOOLS " + json.dumps([t["name"] for t in listed["result"]["tools"]]) + "\n")

ok = request({"jsonrpc": "2.0", "id": 3, "method": "tools/call",
              "params": {"name": "echo", "arguments": {"text": "hi"}}})
sys.stderr.write("CALL " + json.dumps(ok["result"]) + "\n")

failed = request({"jsonrpc": "2.0", "id": 4, "method": "tools/call",
                  "params": {"name": "fail", "arguments": {"text": "x"}}})
sys.stderr.write("FAIL " + json.dumps(failed["result"]) + "\n")
sys.stderr.flush()
"""


# Handshake with an oversized clientInfo, then echo a multi-megabyte argument.
LARGE_MESSAGES = r"""
import json, sys

SIZE = 3 * 1024 * 1024

def request(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()
    return json.loads(sys.stdin.readline())

init = request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {
    "protocolVersion": "2025-06-18",
    "capabilities": {},
    "clientInfo": {"name": "c" * SIZE, "version": "0"},
}})
sys.stderr.write("INIT " + json.dumps(init["result"]["serverInfo"]) + "\n")
sys.stdout.write(json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}) + "\n")

echoed = request({"jsonrpc": "2.0", "id": 2, "method": "tools/call",
                  "params": {"name": "echo", "arguments": {"text": "z" * SIZE}}})
text = echoed["result"]["content"][0]["text"]
sys.stderr.write("ECHO " + json.dumps({"length": len(text), "intact": text == "z" * SIZE}) + "\n")
sys.stderr.flush()
"""

READY_THEN_SLEEP = "import sys, time; print('ready', file=sys.stderr, flush=True); time.sleep(60)"


def reports(lines: list[str], tag: str) -> object:
    for line in lines:
        if line.startswith(tag + " "):
            return json.loads(line[len(tag) + 1 :])
    raise AssertionError(f"no {tag} line in {lines!r}")


class TestLifecycle:
    """Start, exit and dispose against real processes."""

    @pytest.mark.asyncio
    async def test_trivial_command_exits_cleanly(self) -> None:
        session = ServerSession.from_command(sys.executable, ["-c", "pass"])
        await session.start()
        assert session.state is SessionState.RUNNING

        assert await session.process.wait(timeout=10) == 0

        await session.aclose()
        assert session.state is SessionState.DISPOSED
        assert session.diagnostics == []

    @pytest.mark.asyncio
    async def test_nonexistent_executable(self) -> None:
        session = ServerSession.from_command("/nonexistent/conduit-test-binary")

        with pytest.raises(SpawnError):
            await session.start()

        assert session.state is SessionState.FAILED
        await session.aclose()
        await session.aclose()
        assert session.state is SessionState.DISPOSED
        assert session.diagnostics == []

    @pytest.mark.asyncio
    async def test_double_dispose_kills_once(self) -> None:
        session = ServerSession.from_command(
            sys.executable, ["-c", READY_THEN_SLEEP], kill_timeout=5
        )
        await session.start()
        handle = session.handle
        assert handle is not None

        signals: list[bool] = []
        original = session.process._signal

        def spy(h, *, hard):  # type: ignore[no-untyped-def]
            signals.append(hard)
            original(h, hard=hard)

        session.process._signal = spy  # type: ignore[method-assign]

        await session.aclose()
        await session.aclose()

        assert handle.has_exited
        assert signals == [False]
        assert session.state is SessionState.DISPOSED

    @pytest.mark.asyncio
    async def test_cancel_during_start_leaves_no_process(self) -> None:
        entered = asyncio.Event()

        async def slow_factory(channel):  # type: ignore[no-untyped-def]
            entered.set()
            await asyncio.sleep(60)

        session = ServerSession.from_command(
            sys.executable, ["-c", READY_THEN_SLEEP], server_factory=slow_factory, kill_timeout=2
        )
        task = asyncio.create_task(session.start())
        await asyncio.wait_for(entered.wait(), 10)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state is SessionState.FAILED
        assert not session.process.is_running
        assert session.handle is None

    @pytest.mark.asyncio
    async def test_cancelled_run_disposes(self) -> None:
        session = ServerSession.from_command(sys.executable, ["-c", READY_THEN_SLEEP])
        task = asyncio.create_task(session.run())
        while session.state is not SessionState.RUNNING:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state is SessionState.DISPOSED
        assert not session.process.is_running


class TestMcpServer:
    """The default protocol server answers a real MCP client."""

    @pytest.mark.asyncio
    async def test_tools_served_over_stdio(self, registry: ToolRegistry) -> None:
        lines: list[str] = []
        session = ServerSession.from_command(
            sys.executable,
            ["-c", MCP_CLIENT],
            registry=registry,
            name="tool-host",
            stderr_sink=lines.append,
        )
        async with session:
            await asyncio.wait_for(session.run(), 30)

        assert session.diagnostics == []
        assert reports(lines, "INIT")["name"] == "tool-host"  # type: ignore[index]
        assert reports(lines, "TOOLS") == ["echo", "echo_json", "fail", "crash"]

        ok = reports(lines, "CALL")
        assert ok["content"][0]["text"] == "hi"  # type: ignore[index]
        assert not ok.get("isError")  # type: ignore[union-attr]

        failed = reports(lines, "FAIL")
        assert failed["isError"] is True  # type: ignore[index]
        assert failed["content"][0]["text"] == "boom"  # type: ignore[index]
        assert registry.stats["echo"].call_count == 1

    @pytest.mark.asyncio
    async def test_factory_with_explicit_name(self, registry: ToolRegistry) -> None:
        lines: list[str] = []
        session = ServerSession.from_command(
            sys.executable,
            ["-c", MCP_CLIENT],
            server_factory=mcp_server_factory(registry, name="custom"),
            stderr_sink=lines.append,
        )
        async with session:
            await asyncio.wait_for(session.run(), 30)

        assert reports(lines, "INIT")["name"] == "custom"  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_multi_megabyte_messages(self, registry: ToolRegistry) -> None:
        lines: list[str] = []
        session = ServerSession.from_command(
            sys.executable,
            ["-c", LARGE_MESSAGES],
            registry=registry,
            name="tool-host",
            stderr_sink=lines.append,
        )
        async with session:
            await asyncio.wait_for(session.run(), 60)

        assert session.diagnostics == []
        assert reports(lines, "INIT")["name"] == "tool-host"  # type: ignore[index]
        assert reports(lines, "ECHO") == {"length": 3 * 1024 * 1024, "intact": True}
