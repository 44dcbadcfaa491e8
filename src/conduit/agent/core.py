"""Agent orchestration: one conversational exchange per ``chat`` call.

``chat`` builds the message list (system instruction, user prompt), opens
a backend stream and folds what arrives into a transcript:

1. Fragments accumulate into the current assistant message. Their indexes
   must strictly increase; anything else aborts with ``StreamError``.
2. A tool request flushes the accumulated text into an assistant message
   carrying the call, invokes the tool through the registry that owns it
   and appends the result. A failing tool becomes an error result; the
   stream goes on.
3. When the stream ends, leftover text becomes the final assistant message.
   If the backend stopped with ``"tool_use"``, another turn is streamed
   with the transcript so far, up to ``ChatOptions.max_turns``.

The tools offered are the agent's own registry followed by the registry of
every server session added with ``add_server``. On a name clash the first
registry wins.

If the stream fails, the partial transcript (with any partial assistant
text) is kept on the error and on ``agent.last_transcript``. Errors raised
by the ``on_message`` hook propagate as they are.

Examples:
    Chat with the weather tools served to an external MCP client::

        >>> weather = ToolRegistry(create_weather_tools(http))
        >>> agent = Agent(settings.model, AnthropicBackend(api_key=key))
        >>> agent.add_server(ServerSession.from_command("my-mcp-client", registry=weather))
        >>> async with agent.run_servers():
        ...     transcript = await agent.chat("Any weather alerts in CA?")
"""

import asyncio
import logging
import threading
from collections.abc import AsyncIterator, Callable, Sequence
from types import TracebackType
from typing import Self

from conduit.agent.backend import ChatBackend
from conduit.agent.models import ChatOptions, Fragment, StreamEnd, StreamEvent, ToolCallRequest
from conduit.agent.prompts import get_system_prompt
from conduit.lib.errors import InvalidStateError, StreamError, ToolInvocationError
from conduit.lib.scope import ScopedResourceGuard, as_releasable
from conduit.lib.session import ServerSession
from conduit.lib.tools import ToolDescriptor, ToolRegistry
from conduit.lib.transcript import Message, Transcript

logger = logging.getLogger(__name__)

MessageHook = Callable[[Message], None]
OfferedTools = dict[str, tuple[ToolDescriptor, ToolRegistry]]
"""Tool name to its descriptor and the registry that invokes it."""


def run_servers(sessions: Sequence[ServerSession]) -> ScopedResourceGuard[ServerSession]:
    """Guard that starts ``sessions`` together and disposes them on exit."""
    return ScopedResourceGuard(sessions)


class _TurnBuffer:
    """Accumulates the assistant text of one backend stream."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.last_index = -1
        self.emitted = False

    def add(self, fragment: Fragment, transcript: Transcript) -> None:
        if fragment.index <= self.last_index:
            raise StreamError(
                f"Fragment {fragment.index} arrived after fragment {self.last_index}",
                transcript,
            )
        self.last_index = fragment.index
        self.parts.append(fragment.text)

    def flush(self) -> str:
        text = "".join(self.parts)
        self.parts.clear()
        return text

    @property
    def pending(self) -> bool:
        return bool(self.parts)


class Agent:
    """Drives a streaming backend and folds its output into transcripts.

    Args:
        model_id: Model identifier passed to the backend.
        backend: The streaming completion service.
        system_prompt: Instruction placed first in every exchange.
        registry: Tools the model may call.
        on_message: Called with each message as it is appended.
    """

    def __init__(
        self,
        model_id: str,
        backend: ChatBackend,
        *,
        system_prompt: str | None = None,
        registry: ToolRegistry | None = None,
        on_message: MessageHook | None = None,
    ) -> None:
        self.model_id = model_id
        self.backend = backend
        self.system_prompt = system_prompt if system_prompt is not None else get_system_prompt()
        self.registry = registry if registry is not None else ToolRegistry()
        self.on_message = on_message
        self.servers: list[ServerSession] = []
        self.last_transcript: Transcript | None = None
        self._lock = threading.Lock()
        self._busy = False

    def add_server(self, session: ServerSession) -> None:
        """Register ``session``; the tools in its registry are offered by ``chat``."""
        self.servers.append(session)

    def run_servers(self) -> ScopedResourceGuard[ServerSession]:
        return run_servers(self.servers)

    async def chat(self, prompt: str, options: ChatOptions | None = None) -> Transcript:
        """Run one exchange and return its transcript.

        Raises:
            InvalidStateError: If another ``chat`` call is in progress.
            StreamError: If the backend stream failed or broke fragment order.
        """
        with self._lock:
            if self._busy:
                raise InvalidStateError("chat() is already running on this agent.")
            self._busy = True

        try:
            options = options or ChatOptions()
            transcript = Transcript()
            self.last_transcript = transcript
            self._append(transcript, Message.system(self.system_prompt))
            self._append(transcript, Message.user(prompt))

            offered = self.offered_tools(options.tools)
            for turn in range(1, options.max_turns + 1):
                stop_reason = await self._run_turn(transcript, offered, options)
                if stop_reason != "tool_use":
                    break
                logger.debug("Turn %d ended with tool use, continuing", turn)
            else:
                logger.warning("Stopped after max_turns=%d", options.max_turns)
            return transcript
        finally:
            with self._lock:
                self._busy = False

    def offered_tools(self, names: Sequence[str] | None = None) -> OfferedTools:
        """Tools from the agent's registry and every added server, optionally narrowed to ``names``."""
        available: OfferedTools = {}
        registries = [self.registry, *(s.registry for s in self.servers if s.registry is not None)]
        for registry in registries:
            for descriptor in registry:
                owner = available.get(descriptor.name)
                if owner is None:
                    available[descriptor.name] = (descriptor, registry)
                elif owner[0] is not descriptor:
                    logger.warning("Tool %s is provided twice; keeping the first", descriptor.name)
        if names is None:
            return available

        selected: OfferedTools = {}
        for name in names:
            if name not in available:
                logger.warning("Requested tool %s is not registered", name)
                continue
            selected[name] = available[name]
        return selected

    async def aclose(self) -> None:
        """Dispose every registered server session."""
        for session in reversed(self.servers):
            await session.aclose()
        await as_releasable(self.backend).aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # --- internals ---

    def _append(self, transcript: Transcript, message: Message) -> None:
        transcript.append(message)
        if self.on_message is not None:
            self.on_message(message)

    async def _run_turn(
        self,
        transcript: Transcript,
        offered: OfferedTools,
        options: ChatOptions,
    ) -> str:
        buffer = _TurnBuffer()
        stop_reason = "end_turn"
        stream = self.backend.stream(
            self.model_id,
            list(transcript.messages),
            [descriptor for descriptor, _ in offered.values()],
            options,
        )
        events = aiter(stream)
        try:
            while (event := await self._next_event(events, transcript)) is not None:
                match event:
                    case Fragment():
                        buffer.add(event, transcript)
                    case ToolCallRequest():
                        self._append(
                            transcript,
                            Message.assistant(buffer.flush(), [event.to_call()]),
                        )
                        buffer.emitted = True
                        self._append(transcript, await self._invoke(event, offered))
                    case StreamEnd():
                        stop_reason = event.stop_reason
        except (Exception, asyncio.CancelledError):
            self._keep_partial(transcript, buffer)
            raise
        finally:
            await as_releasable(stream).aclose()

        if buffer.pending or not buffer.emitted:
            self._append(transcript, Message.assistant(buffer.flush()))
        return stop_reason

    async def _next_event(
        self, events: AsyncIterator[StreamEvent], transcript: Transcript
    ) -> StreamEvent | None:
        """Next backend event, or None at the end; backend failures become ``StreamError``."""
        try:
            return await anext(events)
        except StopAsyncIteration:
            return None
        except StreamError:
            raise
        except Exception as e:
            raise StreamError(f"Model stream failed: {e}", transcript) from e

    async def _invoke(self, request: ToolCallRequest, offered: OfferedTools) -> Message:
        if request.name not in offered:
            logger.warning("Model requested tool %r, which was not offered", request.name)
            return Message.tool_result(
                request.id, f"Tool '{request.name}' is not available", is_error=True
            )
        _, registry = offered[request.name]
        try:
            text = await registry.invoke(request.name, request.arguments)
        except ToolInvocationError as e:
            logger.warning("Tool %s failed: %s", request.name, e.reason)
            return Message.tool_result(request.id, e.reason, is_error=True)
        return Message.tool_result(request.id, text)

    def _keep_partial(self, transcript: Transcript, buffer: _TurnBuffer) -> None:
        if buffer.pending:
            self._append(transcript, Message.assistant(buffer.flush()))
