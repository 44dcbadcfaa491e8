"""Shared test fixtures.

The tool fixtures cover the three outcomes a tool call can have. Tests get
them through fixtures rather than importing this module, so they run under
any pytest import mode.
"""

import pytest
from pydantic import BaseModel, Field

from conduit.lib.errors import ToolError
from conduit.lib.tools import ToolDescriptor, ToolRegistry, tool


class EchoInput(BaseModel):
    text: str = Field(description="Text to echo back")


class EchoOutput(BaseModel):
    echoed: str
    length: int


@tool("Echo the given text.")
async def echo(params: EchoInput) -> str:
    return params.text


@tool("Echo the given text as a structured result.")
async def echo_json(params: EchoInput) -> EchoOutput:
    return EchoOutput(echoed=params.text, length=len(params.text))


@tool("Always reports an expected failure.")
async def fail(params: EchoInput) -> str:
    raise ToolError("boom")


@tool("Always crashes.")
async def crash(params: EchoInput) -> str:
    raise RuntimeError("kaboom")


@pytest.fixture
def echo_tool() -> ToolDescriptor:
    """The ``echo`` tool on its own; its input model is ``echo_tool.input_model``."""
    return echo


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with one tool per outcome: success, structured, expected failure, crash."""
    return ToolRegistry([echo, echo_json, fail, crash])
