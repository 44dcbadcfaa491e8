"""Command-line entry points.

``chat`` runs one exchange against the Anthropic backend with the weather
tools available and prints the transcript as it grows. ``serve`` launches
an external process and serves the tool registry to it over the
process's stdin/stdout as an MCP server, until the process closes its end.

Usage:
    uv run python -m conduit.environment.cli chat "Any weather alerts in CA?"
    uv run python -m conduit.environment.cli chat --tool get_forecast "Weather in Denver?"
    uv run python -m conduit.environment.cli serve npx @modelcontextprotocol/inspector
"""

import asyncio
import logging
from typing import Annotated

import typer
from rich.console import Console

from conduit.agent.backend import AnthropicBackend
from conduit.agent.config import Settings
from conduit.agent.core import Agent
from conduit.agent.models import ChatOptions
from conduit.agent.tools import create_weather_client, create_weather_tools
from conduit.lib.errors import SpawnError, StreamError
from conduit.lib.session import ServerSession
from conduit.lib.tools import ToolRegistry
from conduit.lib.trace import print_message

logger = logging.getLogger(__name__)
err_console = Console(stderr=True, highlight=False, markup=False)

app = typer.Typer(
    name="conduit",
    help="Process-backed MCP sessions and a streaming agent loop",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback(invoke_without_command=True)
def callback(ctx: typer.Context) -> None:
    """Process-backed MCP sessions and a streaming agent loop."""
    if ctx.invoked_subcommand is None:
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)


async def run_chat(prompt: str, settings: Settings, tools: list[str] | None) -> int:
    """Run one exchange and print it. Returns the process exit code."""
    options = ChatOptions(
        tools=tools, max_turns=settings.max_turns, max_tokens=settings.max_tokens
    )
    logger.info("Starting chat with model: %s", settings.model)

    async with create_weather_client(
        settings.weather_api_base_url, settings.http_timeout_seconds
    ) as http:
        backend = AnthropicBackend(api_key=settings.require_api_key())
        agent = Agent(
            settings.model,
            backend,
            registry=ToolRegistry(create_weather_tools(http)),
            on_message=print_message,
        )
        async with agent:
            try:
                await agent.chat(prompt, options)
            except StreamError as e:
                err_console.print(f"Stream failed: {e}", style="red")
                return 1
            finally:
                for name, stats in agent.registry.stats.items():
                    if stats.call_count:
                        logger.info(
                            "%s: %d calls, %d errors, %.0fms total",
                            name,
                            stats.call_count,
                            stats.error_count,
                            stats.total_duration_ms,
                        )
    return 0


async def run_serve(command: str, args: list[str], settings: Settings) -> int:
    """Serve the weather tools to ``command`` until it exits."""
    async with create_weather_client(
        settings.weather_api_base_url, settings.http_timeout_seconds
    ) as http:
        session = ServerSession.from_command(
            command,
            args,
            registry=ToolRegistry(create_weather_tools(http)),
            stderr_sink=lambda line: err_console.print(f"[{command}] {line}"),
            kill_timeout=settings.kill_timeout_seconds,
        )
        try:
            await session.run()
        except SpawnError as e:
            err_console.print(str(e), style="red")
            return 1
        finally:
            await session.aclose()
        code = session.process.returncode
        logger.info("%s exited with code %s", session.name, code)
    for failure in session.diagnostics:
        err_console.print(f"Disposal {failure.step} failed: {failure.error}", style="yellow")
    return 0


@app.command()
def chat(
    prompt: Annotated[str, typer.Argument(help="The message to send to the model")],
    tool: Annotated[
        list[str] | None,
        typer.Option("--tool", "-t", help="Offer only this tool (repeatable)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging"),
    ] = False,
) -> None:
    """Run a single streaming exchange with the weather tools."""
    _configure_logging(verbose)
    settings = Settings()
    code = asyncio.run(run_chat(prompt, settings, tool or None))
    raise typer.Exit(code)


@app.command(context_settings={"ignore_unknown_options": True})
def serve(
    command: Annotated[str, typer.Argument(help="Executable to launch")],
    args: Annotated[
        list[str] | None,
        typer.Argument(help="Arguments passed to the executable"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging"),
    ] = False,
) -> None:
    """Launch COMMAND and serve the tools to it over its stdin/stdout."""
    _configure_logging(verbose)
    settings = Settings()
    code = asyncio.run(run_serve(command, args or [], settings))
    raise typer.Exit(code)


if __name__ == "__main__":
    app()
