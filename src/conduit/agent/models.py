"""Stream event and option models for the agent loop.

A backend stream yields, in order:

- ``Fragment``: a piece of assistant text with a strictly increasing index
- ``ToolCallRequest``: the model wants a tool run before it continues
- ``StreamEnd`` (optional, last): why the backend stopped; ``"tool_use"``
  asks the agent for a follow-up turn carrying the tool results
"""

from typing import Any

from pydantic import BaseModel, Field

from conduit.lib.transcript import ToolCall


class Fragment(BaseModel):
    """One incremental piece of a model response."""

    index: int = Field(ge=0, description="Position in the stream")
    text: str


class ToolCallRequest(BaseModel):
    """A tool invocation embedded in the stream."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    def to_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


class StreamEnd(BaseModel):
    """Final event of a stream."""

    stop_reason: str = "end_turn"


StreamEvent = Fragment | ToolCallRequest | StreamEnd


class ChatOptions(BaseModel):
    """Per-call options for ``Agent.chat``."""

    tools: list[str] | None = Field(
        default=None, description="Tool names offered to the model (None = all)"
    )
    max_turns: int = Field(
        default=8, ge=1, description="Backend streams opened per chat call, at most"
    )
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
