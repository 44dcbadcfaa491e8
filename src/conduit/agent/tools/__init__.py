"""Tools package - domain tools the agent can call.

This package contains:
- weather.py: US weather alerts and forecasts (National Weather Service)

Each module exposes a ``create_*_tools`` factory returning descriptors
ready for a ``ToolRegistry``.
"""

from conduit.agent.tools.weather import create_weather_client, create_weather_tools

__all__ = [
    "create_weather_client",
    "create_weather_tools",
]
