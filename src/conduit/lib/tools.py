"""Tool descriptors and the name-keyed registry.

Tools are async handlers that take a validated pydantic model and return
either a pydantic model (serialized to JSON) or plain text. The ``tool``
decorator infers the input model from the handler's first parameter.

Examples:
    Define and invoke a tool::

        >>> class EchoInput(BaseModel):
        ...     text: str = Field(description="Text to echo back")
        >>> @tool("Echo the given text.")
        ... async def echo(params: EchoInput) -> str:
        ...     return params.text
        >>> registry = ToolRegistry([echo])
        >>> await registry.invoke("echo", {"text": "hi"})
        'hi'
"""

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from typing import Any, get_type_hints

from pydantic import BaseModel, ValidationError

from conduit.lib.errors import DuplicateToolError, ToolError, ToolInvocationError

logger = logging.getLogger(__name__)

ToolResult = BaseModel | str
ToolHandler = Callable[[Any], Awaitable[ToolResult]]


class ToolStats(BaseModel):
    """Invocation counters for one tool."""

    call_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0

    def record(self, duration_ms: float, is_error: bool) -> None:
        self.call_count += 1
        self.total_duration_ms += duration_ms
        if is_error:
            self.error_count += 1


class ToolDescriptor:
    """A named, described, invocable capability."""

    def __init__(
        self,
        name: str,
        description: str,
        input_model: type[BaseModel],
        handler: ToolHandler,
        tags: list[str] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.input_model = input_model
        self.handler = handler
        self.tags = tags or []

    def __repr__(self) -> str:
        return f"ToolDescriptor(name={self.name!r})"

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    async def invoke(self, arguments: Mapping[str, Any]) -> str:
        """Validate ``arguments``, run the handler and serialize its result.

        Raises:
            ToolInvocationError: On invalid input, a ``ToolError`` from the
                handler, or any other handler exception.
        """
        try:
            params = self.input_model.model_validate(dict(arguments))
        except ValidationError as e:
            raise ToolInvocationError(self.name, f"Invalid input: {e}") from e

        try:
            result = await self.handler(params)
        except ToolError as e:
            raise ToolInvocationError(self.name, str(e)) from e
        except Exception as e:
            logger.exception("Tool %s raised", self.name)
            raise ToolInvocationError(self.name, f"{type(e).__name__}: {e}") from e

        return serialize_result(result)


def serialize_result(result: object) -> str:
    """Render a handler result as text for the transcript and the wire."""
    match result:
        case BaseModel():
            return result.model_dump_json()
        case str():
            return result
        case _:
            return json.dumps(result, default=str)


def tool(
    description: str,
    input_model: type[BaseModel] | None = None,
    *,
    name: str | None = None,
    tags: list[str] | None = None,
) -> Callable[[ToolHandler], ToolDescriptor]:
    """Decorator turning an async handler into a ``ToolDescriptor``.

    Args:
        description: What the tool does and when to use it. This is all the
            model gets to go on.
        input_model: Pydantic model for the arguments. Inferred from the
            handler's first parameter annotation if omitted.
        name: Registry key. Defaults to the handler's function name.
        tags: Free-form labels.
    """

    def decorator(handler: ToolHandler) -> ToolDescriptor:
        tool_name = name or handler.__name__
        resolved = input_model
        if resolved is None:
            params = list(inspect.signature(handler).parameters.values())
            if not params:
                msg = f"tool '{tool_name}': handler has no parameters to infer input_model from"
                raise TypeError(msg)
            hint = get_type_hints(handler).get(params[0].name)
            if isinstance(hint, type) and issubclass(hint, BaseModel):
                resolved = hint
        if resolved is None:
            msg = f"tool '{tool_name}': cannot infer input_model from annotations"
            raise TypeError(msg)
        return ToolDescriptor(tool_name, description, resolved, handler, tags)

    return decorator


class ToolRegistry:
    """Unique-name mapping from tool name to descriptor."""

    def __init__(self, tools: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self.stats: dict[str, ToolStats] = {}
        for descriptor in tools:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise DuplicateToolError(f"Tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor
        self.stats[descriptor.name] = ToolStats()

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self, names: Iterable[str] | None = None) -> list[ToolDescriptor]:
        """All descriptors, or those named (unknown names are skipped with a warning)."""
        if names is None:
            return list(self._tools.values())
        selected: list[ToolDescriptor] = []
        for tool_name in names:
            descriptor = self._tools.get(tool_name)
            if descriptor is None:
                logger.warning("Requested tool %s is not registered", tool_name)
                continue
            selected.append(descriptor)
        return selected

    async def invoke(self, name: str, arguments: Mapping[str, Any]) -> str:
        """Invoke the named tool.

        Raises:
            ToolInvocationError: If the tool is unknown or the call fails.
        """
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolInvocationError(name, "no such tool")

        start = time.perf_counter()
        is_error = False
        try:
            return await descriptor.invoke(arguments)
        except ToolInvocationError:
            is_error = True
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.stats[name].record(duration_ms, is_error)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())
