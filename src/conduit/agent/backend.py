"""Model backends.

The agent loop only needs "submit ordered messages and tool descriptors,
get back an async stream of events". ``ChatBackend`` is that contract;
``AnthropicBackend`` implements it on top of the Anthropic Messages
streaming API. The API key is passed in explicitly; nothing here reads
the environment.

Examples:
    Stream a reply directly::

        >>> backend = AnthropicBackend(api_key=settings.anthropic_api_key)
        >>> async for event in backend.stream(model, messages, [], ChatOptions()):
        ...     print(event)
"""

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from anthropic import AsyncAnthropic

from conduit.agent.models import ChatOptions, Fragment, StreamEnd, StreamEvent, ToolCallRequest
from conduit.lib.tools import ToolDescriptor
from conduit.lib.transcript import Message, Role

logger = logging.getLogger(__name__)


class ChatBackend(Protocol):
    """A streaming completion service."""

    def stream(
        self,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDescriptor],
        options: ChatOptions,
    ) -> AsyncIterator[StreamEvent]: ...


def to_anthropic_messages(
    messages: Sequence[Message],
) -> tuple[str, list[dict[str, Any]]]:
    """Split a transcript into the system prompt and Messages API payload.

    Consecutive tool results are merged into one user turn, as the API
    requires every result for an assistant turn in the following user turn.
    """
    system_parts: list[str] = []
    payload: list[dict[str, Any]] = []
    for message in messages:
        match message.role:
            case Role.SYSTEM:
                system_parts.append(message.content)
            case Role.USER:
                payload.append({"role": "user", "content": message.content})
            case Role.ASSISTANT:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                blocks.extend(
                    {"type": "tool_use", "id": c.id, "name": c.name, "input": c.arguments}
                    for c in message.tool_calls
                )
                if blocks:
                    payload.append({"role": "assistant", "content": blocks})
            case Role.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                    "is_error": message.is_error,
                }
                previous = payload[-1] if payload else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                ):
                    previous["content"].append(block)
                else:
                    payload.append({"role": "user", "content": [block]})
    return "\n\n".join(system_parts), payload


def to_anthropic_tool(descriptor: ToolDescriptor) -> dict[str, Any]:
    return {
        "name": descriptor.name,
        "description": descriptor.description,
        "input_schema": descriptor.input_schema,
    }


class AnthropicBackend:
    """``ChatBackend`` over ``AsyncAnthropic.messages.stream``."""

    def __init__(self, *, api_key: str | None = None, client: AsyncAnthropic | None = None) -> None:
        if client is None and not api_key:
            raise ValueError("AnthropicBackend needs an api_key or a client")
        self._owns_client = client is None
        self.client = client or AsyncAnthropic(api_key=api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.close()

    async def stream(
        self,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolDescriptor],
        options: ChatOptions,
    ) -> AsyncIterator[StreamEvent]:
        system, payload = to_anthropic_messages(messages)
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens,
            "messages": payload,
        }
        if system:
            params["system"] = system
        if tools:
            params["tools"] = [to_anthropic_tool(t) for t in tools]
        if options.temperature is not None:
            params["temperature"] = options.temperature

        logger.debug("Opening stream: model=%s messages=%d", model, len(payload))
        index = 0
        async with self.client.messages.stream(**params) as stream:
            async for event in stream:
                match event.type:
                    case "text":
                        yield Fragment(index=index, text=event.text)
                        index += 1
                    case "content_block_stop" if event.content_block.type == "tool_use":
                        block = event.content_block
                        yield ToolCallRequest(
                            id=block.id, name=block.name, arguments=dict(block.input)
                        )
            final = await stream.get_final_message()
        yield StreamEnd(stop_reason=final.stop_reason or "end_turn")
