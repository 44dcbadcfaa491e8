"""Console display of transcript entries.

Tool calls and their results are paired by color: when an assistant
message requesting a tool is printed, the call id gets a color from a
rotating palette, and the matching tool-result entry reuses it.

Every printed entry is also written to the ``conduit.agent.stream`` logger
so non-interactive runs keep the same record in their logs.

Examples:
    Print a finished exchange::

        >>> transcript = await agent.chat("Any weather alerts in CA?")
        >>> print_transcript(transcript)
"""

import itertools
import json
import logging
from typing import TypeAlias

from pydantic import BaseModel
from rich.console import Console

from conduit.lib.transcript import Message, Role, Transcript

JsonValue: TypeAlias = (
    str | int | float | bool | None | list["JsonValue"] | dict[str, "JsonValue"]
)

TOOL_COLORS = [
    "cyan",
    "green",
    "yellow",
    "magenta",
    "blue",
    "bright_cyan",
    "bright_green",
    "bright_yellow",
    "bright_magenta",
    "bright_blue",
]
color_cycle = itertools.cycle(TOOL_COLORS)
id_to_color: dict[str, str] = {}
console = Console(highlight=False, markup=False)
stream_log = logging.getLogger("conduit.agent.stream")


def truncate_str(value: str, max_len: int = 500) -> str:
    """Truncate a string to max_len, appending '...' if trimmed."""
    if len(value) > max_len:
        return value[:max_len] + "..."
    return value


def truncate_str_fields(
    obj: JsonValue, max_len: int = 500, max_len_list: int = 10
) -> JsonValue:
    """Recursively truncate string values in a JSON-like structure."""
    match obj:
        case dict() as d:
            return {k: truncate_str_fields(v, max_len) for k, v in d.items()}
        case list() as items:
            return [truncate_str_fields(item, max_len) for item in items][:max_len_list]
        case str() as s:
            return truncate_str(s, max_len)
        case _:
            return obj


def format_tool_result(text: str, max_len: int = 500) -> str:
    """Pretty-print JSON tool output with long strings cut; plain text is truncated."""
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return truncate_str(text, max_len)
    return json.dumps(truncate_str_fields(parsed, max_len), indent=2)


class EntryInfo(BaseModel):
    """Display information for one transcript entry."""

    emoji: str
    label: str
    content: str


def extract_entry_info(message: Message) -> EntryInfo:
    match message.role:
        case Role.SYSTEM:
            return EntryInfo(emoji="⚙️", label="System", content=message.content)
        case Role.USER:
            return EntryInfo(emoji="👤", label="User", content=message.content)
        case Role.ASSISTANT:
            return EntryInfo(emoji="💬", label="Response", content=message.content)
        case Role.TOOL:
            label = "Tool error" if message.is_error else "Result"
            return EntryInfo(
                emoji="📋", label=label, content=format_tool_result(message.content)
            )
        case _:
            return EntryInfo(emoji="❓", label="Unknown", content=message.content)


def print_message(message: Message, prefix: str = "") -> None:
    """Print one entry, pairing tool calls and results by color."""
    info = extract_entry_info(message)

    if message.role == Role.TOOL and message.tool_call_id is not None:
        color = id_to_color.pop(message.tool_call_id, "default")
        console.print(f"{prefix}{info.emoji} {info.label} ", end="")
        console.print(f"[{message.tool_call_id}]", style=color)
        console.print(info.content, style="red" if message.is_error else None)
        stream_log.info(
            "%sTOOL_RESULT [%s]: %s", prefix, message.tool_call_id, info.content
        )
        return

    if info.content:
        console.print(f"{prefix}{info.emoji} {info.content}")
        stream_log.info("%s%s: %s", prefix, info.label.upper(), info.content)

    for call in message.tool_calls:
        color = next(color_cycle)
        id_to_color[call.id] = color
        console.print(f"{prefix}🔧 Tool: {call.name} ", end="")
        console.print(f"[{call.id}]", style=color)
        if call.arguments:
            console.print(json.dumps(call.arguments, indent=2))
        stream_log.info(
            "%sTOOL_USE [%s] %s: %s",
            prefix,
            call.id,
            call.name,
            json.dumps(call.arguments),
        )


def print_transcript(
    transcript: Transcript, prefix: str = "", *, include_system: bool = False
) -> None:
    """Print every entry of ``transcript`` in order."""
    for message in transcript.messages:
        if message.role == Role.SYSTEM and not include_system:
            continue
        print_message(message, prefix=prefix)
