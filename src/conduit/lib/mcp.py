"""MCP server that speaks over a child process's stdio.

The ``mcp`` library owns message framing and semantics. This module only
bridges a ``StdioChannel`` (newline-delimited JSON-RPC) onto the memory
streams ``mcp.server.Server.run`` expects, and exposes a ``ToolRegistry``
through the ``tools/list`` and ``tools/call`` handlers.

Tool failures are reported back to the peer as ``CallToolResult`` with
``isError=True`` rather than as JSON-RPC errors, so the peer can show the
reason to its model.

Examples:
    Serve the weather tools to a child process::

        >>> factory = mcp_server_factory(ToolRegistry(create_weather_tools(http)), name="weather")
        >>> session = ServerSession(descriptor, server_factory=factory)
        >>> await session.run()
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server import Server
from mcp.shared.message import SessionMessage
from mcp.types import CallToolResult, ContentBlock, JSONRPCMessage, TextContent, Tool
from pydantic import ValidationError

from conduit.lib.channel import StdioChannel
from conduit.lib.errors import InvalidStateError, ToolInvocationError
from conduit.lib.tools import ToolRegistry
from conduit.version import HARNESS_VERSION

logger = logging.getLogger(__name__)

ReadStream = MemoryObjectReceiveStream[SessionMessage | Exception]
WriteStream = MemoryObjectSendStream[SessionMessage]


@asynccontextmanager
async def channel_streams(
    channel: StdioChannel,
) -> AsyncIterator[tuple[ReadStream, WriteStream]]:
    """Pump lines between ``channel`` and a pair of MCP session streams.

    Unparseable lines are forwarded as exceptions so the session can log
    them without tearing down the connection.
    """
    read_writer, read_stream = anyio.create_memory_object_stream[
        SessionMessage | Exception
    ](0)
    write_stream, write_reader = anyio.create_memory_object_stream[SessionMessage](0)

    async def channel_reader() -> None:
        try:
            async with read_writer:
                async for line in channel:
                    if not line.strip():
                        continue
                    try:
                        message = JSONRPCMessage.model_validate_json(line)
                    except ValidationError as exc:
                        await read_writer.send(exc)
                        continue
                    await read_writer.send(SessionMessage(message))
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async def channel_writer() -> None:
        try:
            async with write_reader:
                async for session_message in write_reader:
                    payload = session_message.message.model_dump_json(
                        by_alias=True, exclude_none=True
                    )
                    await channel.send(payload.encode("utf-8") + b"\n")
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.info("Peer stopped reading: %s", e)

    async with anyio.create_task_group() as tg:
        tg.start_soon(channel_reader)
        tg.start_soon(channel_writer)
        try:
            yield read_stream, write_stream
        finally:
            tg.cancel_scope.cancel()


def build_server(name: str, version: str, registry: ToolRegistry) -> Server:
    """Create a low-level MCP server whose tools come from ``registry``."""
    server = Server(name, version=version)

    @server.list_tools()  # type: ignore[no-untyped-call,untyped-decorator]
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name=descriptor.name,
                description=descriptor.description,
                inputSchema=descriptor.input_schema,
            )
            for descriptor in registry
        ]

    @server.call_tool()  # type: ignore[untyped-decorator]
    async def call_tool(name: str, arguments: dict[str, object]) -> CallToolResult:
        try:
            text = await registry.invoke(name, arguments or {})
        except ToolInvocationError as e:
            logger.warning("Tool call %s failed: %s", name, e.reason)
            content: list[ContentBlock] = [TextContent(type="text", text=e.reason)]
            return CallToolResult(content=content, isError=True)
        return CallToolResult(content=[TextContent(type="text", text=text)])

    return server


class McpProtocolServer:
    """An MCP server instance bound to one channel.

    ``run()`` serves until the peer closes its end; ``aclose()`` stops a
    running ``run()`` from any task and closes the channel.
    """

    def __init__(
        self,
        channel: StdioChannel,
        *,
        name: str,
        version: str = HARNESS_VERSION,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.channel = channel
        self.name = name
        self.registry = registry if registry is not None else ToolRegistry()
        self.server = build_server(name, version, self.registry)
        self.closed = False
        self._cancel_scope: anyio.CancelScope | None = None

    async def run(self) -> None:
        if self.closed:
            raise InvalidStateError("Protocol server has been released.")
        logger.info("Serving MCP server %s", self.name)
        try:
            with anyio.CancelScope() as scope:
                self._cancel_scope = scope
                async with channel_streams(self.channel) as (read_stream, write_stream):
                    await self.server.run(
                        read_stream,
                        write_stream,
                        self.server.create_initialization_options(),
                    )
        finally:
            self._cancel_scope = None
        logger.info("MCP server %s stopped", self.name)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
        await self.channel.aclose()


def mcp_server_factory(
    registry: ToolRegistry, *, name: str | None = None
) -> Callable[[StdioChannel], McpProtocolServer]:
    """Server factory for ``ServerSession`` exposing ``registry``.

    Without ``name`` the factory falls back to ``"conduit"``.
    """

    def factory(channel: StdioChannel) -> McpProtocolServer:
        return McpProtocolServer(channel, name=name or "conduit", registry=registry)

    return factory
