"""Exception types shared across the harness.

Start-time failures propagate to the immediate caller. Stream failures
propagate after the partial transcript is preserved. Tool failures are
folded into the transcript by the agent loop and never abort an exchange.
Disposal failures are logged, never raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conduit.lib.transcript import Transcript


class ConduitError(Exception):
    """Base class for harness errors."""


class SpawnError(ConduitError):
    """The child process could not be created."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start process {command!r}: {reason}")
        self.command = command
        self.reason = reason


class InvalidStateError(ConduitError):
    """An operation was called in a state that does not allow it."""


class AlreadyStartedError(InvalidStateError):
    """``start()`` was called on a process session that already owns a process."""


class StreamError(ConduitError):
    """The model backend stream failed mid-response.

    ``transcript`` holds everything accumulated before the failure,
    including any partial assistant text.
    """

    def __init__(self, message: str, transcript: Transcript) -> None:
        super().__init__(message)
        self.transcript = transcript


class ToolError(Exception):
    """Raise in a tool handler to report an expected failure to the model."""


class ToolInvocationError(ConduitError):
    """A tool call failed (unknown tool, invalid input, or handler error)."""

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(f"Tool '{tool_name}' failed: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class DuplicateToolError(ConduitError):
    """A tool with the same name is already registered."""
