"""Process-backed MCP sessions and a streaming agent loop.

Structure:
- conduit/lib/: Reusable harness pieces, configured through arguments
  - process.py: One child process, its streams and its termination
  - channel.py: Byte channel over a child's stdin/stdout
  - session.py: Process + channel + protocol server, disposal state machine
  - mcp.py: MCP server bridged onto a channel, exposing a tool registry
  - scope.py: Release capability and exactly-once scoped cleanup
  - tools.py: Tool descriptors and the registry
  - transcript.py: Conversation transcript models
  - trace.py: Console display of transcripts

- conduit/agent/: The streaming agent loop
  - core.py: Agent orchestration
  - backend.py: Model backends
  - config.py: Configuration via pydantic-settings
  - tools/: Sample domain tools

- conduit/environment/: Entry points
  - cli/: typer CLI (chat, serve)
"""
