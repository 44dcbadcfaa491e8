"""Library utilities for process-backed protocol sessions.

This package contains reusable, **parametric** abstractions configured
through constructor and function arguments. Nothing here reads the
environment. Domain-specific code belongs in conduit.agent.

Modules:
- channel: Byte channel over a child's stdin/stdout
- errors: Exception types shared across the harness
- mcp: MCP server bridged onto a channel (channel_streams, McpProtocolServer)
- process: Child process lifecycle (ProcessSession)
- scope: Releasable capability and ScopedResourceGuard
- session: ServerSession disposal state machine
- tools: Tool descriptors, @tool decorator and ToolRegistry
- trace: Console display of transcript entries
- transcript: Message and Transcript models
"""

from conduit.lib.channel import StdioChannel
from conduit.lib.errors import (
    AlreadyStartedError,
    ConduitError,
    DuplicateToolError,
    InvalidStateError,
    SpawnError,
    StreamError,
    ToolError,
    ToolInvocationError,
)
from conduit.lib.mcp import McpProtocolServer, build_server, channel_streams, mcp_server_factory
from conduit.lib.process import ChildProcessDescriptor, ProcessHandle, ProcessSession
from conduit.lib.scope import Releasable, ScopedResourceGuard, as_releasable
from conduit.lib.session import DisposalFailure, ServerSession, SessionState
from conduit.lib.tools import ToolDescriptor, ToolRegistry, ToolStats, tool
from conduit.lib.trace import print_message, print_transcript
from conduit.lib.transcript import Message, Role, ToolCall, Transcript

__all__ = [
    # Channel
    "StdioChannel",
    # Errors
    "AlreadyStartedError",
    "ConduitError",
    "DuplicateToolError",
    "InvalidStateError",
    "SpawnError",
    "StreamError",
    "ToolError",
    "ToolInvocationError",
    # MCP
    "McpProtocolServer",
    "build_server",
    "channel_streams",
    "mcp_server_factory",
    # Process
    "ChildProcessDescriptor",
    "ProcessHandle",
    "ProcessSession",
    # Scope
    "Releasable",
    "ScopedResourceGuard",
    "as_releasable",
    # Session
    "DisposalFailure",
    "ServerSession",
    "SessionState",
    # Tools
    "ToolDescriptor",
    "ToolRegistry",
    "ToolStats",
    "tool",
    # Trace
    "print_message",
    "print_transcript",
    # Transcript
    "Message",
    "Role",
    "ToolCall",
    "Transcript",
]
