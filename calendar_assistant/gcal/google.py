"""Google Calendar v3 REST backend."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from calendar_assistant.errors import CalendarBackendError, EventNotFoundError
from calendar_assistant.gcal.base import CalendarBackend
from calendar_assistant.models import RequestContext

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.googleapis.com/calendar/v3"
MAX_RESULTS = 250


class GoogleCalendarBackend(CalendarBackend):
    """Talks to the primary calendar with the bearer token from the request context."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        calendar_id: str = "primary",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._calendar_id = calendar_id
        self._timeout_seconds = timeout_seconds

    def _events_path(self, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _request(
        self,
        ctx: RequestContext,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> dict[str, Any] | None:
        if not ctx.access_token:
            raise CalendarBackendError("No calendar access token available", status_code=401)

        headers = {"Authorization": f"Bearer {ctx.access_token}", "Accept": "application/json"}
        timeout = httpx.Timeout(self._timeout_seconds)
        async with httpx.AsyncClient(base_url=self._base_url, timeout=timeout) as client:
            try:
                response = await client.request(method, path, headers=headers, params=params, json=body)
            except httpx.RequestError as exc:
                LOGGER.error("Calendar API network error on %s %s: %s", method, path, exc)
                raise CalendarBackendError(f"Network error: {exc}") from exc

        if response.status_code in (404, 410) and event_id is not None:
            raise EventNotFoundError(event_id)
        if response.status_code == 401:
            raise CalendarBackendError("Unauthorized - access token may be expired", status_code=401)
        if response.status_code == 403:
            raise CalendarBackendError("Forbidden - calendar scope may not be granted", status_code=403)
        if response.status_code >= 400:
            LOGGER.error("Calendar API error %s on %s %s: %s", response.status_code, method, path, response.text[:200])
            raise CalendarBackendError(
                f"Calendar API request failed ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_events(self, ctx: RequestContext, start: datetime, end: datetime) -> list[dict[str, Any]]:
        params = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": MAX_RESULTS,
        }
        data = await self._request(ctx, "GET", self._events_path(), params=params) or {}
        items = data.get("items", [])
        LOGGER.info("Fetched %d event(s) between %s and %s", len(items), start.isoformat(), end.isoformat())
        return items

    async def get_event(self, ctx: RequestContext, event_id: str) -> dict[str, Any]:
        return await self._request(ctx, "GET", self._events_path(event_id), event_id=event_id) or {}

    async def insert_event(self, ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(ctx, "POST", self._events_path(), body=body) or {}

    async def patch_event(self, ctx: RequestContext, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(ctx, "PATCH", self._events_path(event_id), body=body, event_id=event_id) or {}

    async def delete_event(self, ctx: RequestContext, event_id: str) -> None:
        await self._request(ctx, "DELETE", self._events_path(event_id), event_id=event_id)
