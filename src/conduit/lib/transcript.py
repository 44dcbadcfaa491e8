"""Conversation transcript models.

A transcript is the ordered, append-only record of one exchange. Its only
consistency rule is order: entries appear exactly in the order they were
produced. It is owned by a single ``chat`` call at a time.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str = Field(description="Backend-assigned call id, echoed by the result")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """One transcript entry."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(
        default_factory=list, description="Calls requested by an assistant message"
    )
    tool_call_id: str | None = Field(
        default=None, description="Call this tool-result message answers"
    )
    is_error: bool = Field(default=False, description="Tool result carries a failure")

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(cls, text: str, tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=text, tool_calls=tool_calls or [])

    @classmethod
    def tool_result(cls, call_id: str, text: str, *, is_error: bool = False) -> "Message":
        return cls(role=Role.TOOL, content=text, tool_call_id=call_id, is_error=is_error)


class Transcript(BaseModel):
    """Append-only ordered list of messages."""

    messages: list[Message] = Field(default_factory=list)

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def __len__(self) -> int:
        return len(self.messages)

    def by_role(self, role: Role) -> list[Message]:
        return [m for m in self.messages if m.role == role]

    @property
    def assistant_text(self) -> str:
        """All assistant content, concatenated in order."""
        return "".join(m.content for m in self.messages if m.role == Role.ASSISTANT)

    @property
    def final_message(self) -> Message | None:
        """The last assistant message, if any."""
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None
