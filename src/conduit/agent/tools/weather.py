"""US weather tools backed by the National Weather Service API.

Tool descriptions are the model's only documentation for each tool, so
they say what the tool returns and when to reach for it.

The tools share one ``httpx.AsyncClient`` whose ``base_url`` points at the
API root; ``create_weather_client`` builds one with the User-Agent header
the service requires. HTTP failures are reported to the model as tool
errors rather than raised into the agent loop.
"""

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from conduit.lib.errors import ToolError
from conduit.lib.tools import ToolDescriptor, tool

logger = logging.getLogger(__name__)

USER_AGENT = "conduit-weather-tool/1.0"


# --- Schemas ---


class AlertsInput(BaseModel):
    """Input for get_alerts."""

    state: str = Field(
        min_length=2, max_length=2, description="The US state to get alerts for (e.g. CA)."
    )


class ForecastInput(BaseModel):
    """Input for get_forecast."""

    latitude: float = Field(ge=-90, le=90, description="Latitude of the location.")
    longitude: float = Field(ge=-180, le=180, description="Longitude of the location.")


# --- Formatting ---


def format_alert(properties: dict[str, Any]) -> str:
    return "\n".join(
        [
            f"Event: {properties.get('event')}",
            f"Area: {properties.get('areaDesc')}",
            f"Severity: {properties.get('severity')}",
            f"Description: {properties.get('description')}",
            f"Instruction: {properties.get('instruction')}",
        ]
    )


def format_period(period: dict[str, Any]) -> str:
    return "\n".join(
        [
            f"Name: {period.get('name')}",
            f"Start Time: {period.get('startTime')}",
            f"End Time: {period.get('endTime')}",
            f"Temperature: {period.get('temperature')}°F",
            f"Wind Speed: {period.get('windSpeed')}",
            f"Wind Direction: {period.get('windDirection')}",
            f"Short Forecast: {period.get('shortForecast')}",
            f"Detailed Forecast: {period.get('detailedForecast')}",
        ]
    )


async def _get_json(client: httpx.AsyncClient, url: str) -> dict[str, Any]:
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ToolError(
            f"Weather service returned {e.response.status_code} for {e.request.url}"
        ) from e
    except httpx.HTTPError as e:
        raise ToolError(f"Weather service request failed: {e}") from e
    return response.json()


# --- Tool Implementations ---


def create_weather_client(
    base_url: str = "https://api.weather.gov", timeout: float = 30.0
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        headers={"User-Agent": USER_AGENT, "Accept": "application/geo+json"},
    )


def create_weather_tools(client: httpx.AsyncClient) -> list[ToolDescriptor]:
    """Build the weather tools bound to ``client``."""

    @tool(
        "Get active weather alerts for a US state. "
        "Use this when the user asks about warnings, watches or hazardous "
        "conditions in a state. Takes a two-letter state code. "
        "Returns one block per alert (event, area, severity, description, "
        "instruction), or a note that there are none."
    )
    async def get_alerts(params: AlertsInput) -> str:
        state = params.state.upper()
        data = await _get_json(client, f"/alerts/active/area/{state}")
        alerts = data.get("features", [])
        logger.info("get_alerts(%s): %d active", state, len(alerts))
        if not alerts:
            return "No active alerts for this state."
        return "\n--\n".join(format_alert(a.get("properties", {})) for a in alerts)

    @tool(
        "Get the weather forecast for a location in the US. "
        "Use this when the user asks what the weather will be like somewhere "
        "and you know (or can estimate) its latitude and longitude. "
        "Returns one block per forecast period with temperature, wind and "
        "a short and detailed forecast."
    )
    async def get_forecast(params: ForecastInput) -> str:
        point = await _get_json(client, f"/points/{params.latitude},{params.longitude}")
        forecast_url = point.get("properties", {}).get("forecast")
        if not forecast_url:
            raise ToolError("No forecast is available for this location.")
        forecast = await _get_json(client, forecast_url)
        periods = forecast.get("properties", {}).get("periods", [])
        logger.info(
            "get_forecast(%s, %s): %d periods", params.latitude, params.longitude, len(periods)
        )
        return "\n---\n".join(format_period(p) for p in periods)

    return [get_alerts, get_forecast]
