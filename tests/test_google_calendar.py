"""Tests for GoogleCalendarBackend."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from calendar_assistant.errors import CalendarBackendError, EventNotFoundError
from calendar_assistant.gcal.google import GoogleCalendarBackend
from calendar_assistant.models import RequestContext

CTX = RequestContext(user_id="user-1", access_token="token")


def _mock_response(data: dict | None, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"{}" if data is not None else b""
    resp.text = "body"
    resp.json.return_value = data
    return resp


def _mock_client(*responses: MagicMock) -> AsyncMock:
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.request = AsyncMock(side_effect=list(responses))
    return client


@pytest.mark.asyncio
async def test_list_events_sends_window_and_bearer_token():
    client = _mock_client(_mock_response({"items": [{"id": "a"}]}))
    start = datetime(2026, 10, 20, tzinfo=timezone.utc)
    end = datetime(2026, 10, 21, tzinfo=timezone.utc)

    with patch("calendar_assistant.gcal.google.httpx.AsyncClient", return_value=client):
        events = await GoogleCalendarBackend().list_events(CTX, start, end)

    assert events == [{"id": "a"}]
    method, path = client.request.call_args.args
    kwargs = client.request.call_args.kwargs
    assert (method, path) == ("GET", "/calendars/primary/events")
    assert kwargs["headers"]["Authorization"] == "Bearer token"
    assert kwargs["params"]["timeMin"] == "2026-10-20T00:00:00+00:00"
    assert kwargs["params"]["singleEvents"] == "true"
    assert kwargs["params"]["orderBy"] == "startTime"


@pytest.mark.asyncio
async def test_missing_event_raises_not_found():
    client = _mock_client(_mock_response({"error": {}}, status_code=404))

    with patch("calendar_assistant.gcal.google.httpx.AsyncClient", return_value=client):
        with pytest.raises(EventNotFoundError):
            await GoogleCalendarBackend().get_event(CTX, "gone")


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "fragment"), [(401, "Unauthorized"), (403, "Forbidden"), (500, "(500)")])
async def test_error_statuses_raise_backend_error(status, fragment):
    client = _mock_client(_mock_response({"error": {}}, status_code=status))

    with patch("calendar_assistant.gcal.google.httpx.AsyncClient", return_value=client):
        with pytest.raises(CalendarBackendError, match=fragment) as info:
            await GoogleCalendarBackend().insert_event(CTX, {"summary": "x"})

    assert info.value.status_code == status


@pytest.mark.asyncio
async def test_network_error_raises_backend_error():
    client = _mock_client()
    client.request = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

    with patch("calendar_assistant.gcal.google.httpx.AsyncClient", return_value=client):
        with pytest.raises(CalendarBackendError, match="Network error"):
            await GoogleCalendarBackend().delete_event(CTX, "a")


@pytest.mark.asyncio
async def test_missing_token_is_rejected_before_any_request():
    with patch("calendar_assistant.gcal.google.httpx.AsyncClient") as client_cls:
        with pytest.raises(CalendarBackendError) as info:
            await GoogleCalendarBackend().get_event(RequestContext(user_id="user-1"), "a")

    assert info.value.status_code == 401
    client_cls.assert_not_called()


@pytest.mark.asyncio
async def test_delete_accepts_empty_response():
    client = _mock_client(_mock_response(None, status_code=204))

    with patch("calendar_assistant.gcal.google.httpx.AsyncClient", return_value=client):
        assert await GoogleCalendarBackend().delete_event(CTX, "a") is None

    assert client.request.call_args.args == ("DELETE", "/calendars/primary/events/a")
