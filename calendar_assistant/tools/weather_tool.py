"""Daily weather forecast via Open-Meteo."""

from __future__ import annotations

import logging
from datetime import date, datetime, tzinfo
from typing import Any, Callable

import httpx

from calendar_assistant.errors import ToolValidationError
from calendar_assistant.models import RequestContext
from calendar_assistant.tools.base import Tool
from calendar_assistant.tools.results import Err, ErrorKind, HandlerResult, Ok

LOGGER = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
DAILY_FIELDS = "weather_code,temperature_2m_max,temperature_2m_min,precipitation_probability_max"

WEATHER_DESCRIPTIONS = {
    0: "clear skies",
    1: "mostly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "freezing fog",
    51: "light drizzle",
    53: "drizzle",
    55: "heavy drizzle",
    61: "light rain",
    63: "rain",
    65: "heavy rain",
    66: "freezing rain",
    67: "heavy freezing rain",
    71: "light snow",
    73: "snow",
    75: "heavy snow",
    77: "snow grains",
    80: "light showers",
    81: "showers",
    82: "violent showers",
    85: "snow showers",
    86: "heavy snow showers",
    95: "thunderstorms",
    96: "thunderstorms with hail",
    99: "severe thunderstorms with hail",
}


class WeatherTool(Tool):
    name = "get_weather"
    description = "Get the daily weather forecast for a location, e.g. before planning an outdoor event."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "location": {"type": "string", "description": "City name, e.g. 'San Francisco'."},
            "date": {"type": "string", "description": "Forecast date, YYYY-MM-DD. Defaults to today."},
        },
        "required": ["location"],
        "additionalProperties": False,
    }

    def __init__(
        self,
        tz: tzinfo,
        clock: Callable[[], datetime] | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._tz = tz
        self._clock = clock
        self._timeout_seconds = timeout_seconds

    def _today(self) -> date:
        now = self._clock() if self._clock is not None else datetime.now(self._tz)
        return now.astimezone(self._tz).date()

    def _forecast_date(self, raw: str | None) -> date:
        if not raw:
            return self._today()
        try:
            return date.fromisoformat(raw.strip()[:10])
        except ValueError:
            LOGGER.warning("Invalid forecast date %r, using today", raw)
            return self._today()

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        location = str(kwargs["location"]).strip()
        if not location:
            raise ToolValidationError("Location is required for a weather forecast.")
        day = self._forecast_date(kwargs.get("date"))

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                geo = await client.get(
                    GEOCODING_URL, params={"name": location, "count": 1, "language": "en", "format": "json"}
                )
                if geo.status_code != 200:
                    return Err(ErrorKind.BACKEND, f"Geocoding failed (HTTP {geo.status_code})")
                places = geo.json().get("results") or []
                if not places:
                    return Err(ErrorKind.NOT_FOUND, f"Unknown location: {location}")
                place = places[0]

                resp = await client.get(
                    FORECAST_URL,
                    params={
                        "latitude": place["latitude"],
                        "longitude": place["longitude"],
                        "daily": DAILY_FIELDS,
                        "timezone": "auto",
                        "start_date": day.isoformat(),
                        "end_date": day.isoformat(),
                    },
                )
                if resp.status_code != 200:
                    return Err(ErrorKind.BACKEND, f"Forecast unavailable for {day.isoformat()} (HTTP {resp.status_code})")
                daily = resp.json().get("daily") or {}
        except httpx.HTTPError as exc:
            LOGGER.error("Weather lookup failed for %s: %s", location, exc)
            return Err(ErrorKind.BACKEND, f"Weather service unreachable: {exc}")

        if not daily.get("time"):
            return Err(ErrorKind.BACKEND, f"No forecast returned for {day.isoformat()}")

        name = ", ".join(part for part in (place.get("name"), place.get("admin1"), place.get("country")) if part)
        code = _first(daily.get("weather_code"))
        return Ok(
            {
                "location": name,
                "date": day.isoformat(),
                "condition": WEATHER_DESCRIPTIONS.get(code, "unclear conditions"),
                "temperature_max": _first(daily.get("temperature_2m_max")),
                "temperature_min": _first(daily.get("temperature_2m_min")),
                "precipitation_probability": _first(daily.get("precipitation_probability_max")),
            }
        )

    def summarize(self, payload: Any) -> str:
        text = (
            f"Weather for {payload['location']} on {payload['date']}: {payload['condition']}, "
            f"{payload['temperature_min']}-{payload['temperature_max']}°C"
        )
        if payload.get("precipitation_probability") is not None:
            text += f", {payload['precipitation_probability']}% chance of precipitation"
        return text + "."


def _first(values: list[Any] | None) -> Any:
    return values[0] if values else None
