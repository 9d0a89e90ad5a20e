"""Shared fixtures: an in-memory calendar, a controllable clock, and wired collaborators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from calendar_assistant.cache.backends import InMemoryCacheBackend
from calendar_assistant.cache.events import EventCache
from calendar_assistant.db import Database
from calendar_assistant.errors import CalendarBackendError, EventNotFoundError
from calendar_assistant.gcal.base import CalendarBackend
from calendar_assistant.models import RequestContext
from calendar_assistant.scheduling.conflicts import AvailabilityEngine
from calendar_assistant.scheduling.events import overlaps_window
from calendar_assistant.tools.calendar_tools import CalendarToolkit

UTC = timezone.utc
# A Tuesday.
NOW = datetime(2026, 10, 20, 8, 0, tzinfo=UTC)


def timed_event(event_id: str, summary: str, start: str, end: str) -> dict[str, Any]:
    return {"id": event_id, "summary": summary, "start": {"dateTime": start}, "end": {"dateTime": end}}


def all_day_event(event_id: str, summary: str, day: str, next_day: str) -> dict[str, Any]:
    return {"id": event_id, "summary": summary, "start": {"date": day}, "end": {"date": next_day}}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalendarBackend(CalendarBackend):
    """In-memory calendar that records every call it receives."""

    def __init__(self, events: list[dict[str, Any]] | None = None) -> None:
        self.events: dict[str, dict[str, Any]] = {event["id"]: dict(event) for event in events or []}
        self.list_calls: list[tuple[datetime, datetime]] = []
        self.inserted: list[dict[str, Any]] = []
        self.list_error: Exception | None = None
        self.fail_delete_ids: set[str] = set()
        self._next_id = 1

    def add(self, event: dict[str, Any]) -> None:
        self.events[event["id"]] = dict(event)

    async def list_events(self, ctx: RequestContext, start: datetime, end: datetime) -> list[dict[str, Any]]:
        self.list_calls.append((start, end))
        if self.list_error is not None:
            raise self.list_error
        return [dict(e) for e in self.events.values() if overlaps_window(e, start, end, UTC)]

    async def get_event(self, ctx: RequestContext, event_id: str) -> dict[str, Any]:
        if event_id not in self.events:
            raise EventNotFoundError(event_id)
        return dict(self.events[event_id])

    async def insert_event(self, ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
        event = {**body, "id": f"evt-{self._next_id}"}
        self._next_id += 1
        self.events[event["id"]] = event
        self.inserted.append(event)
        return dict(event)

    async def patch_event(self, ctx: RequestContext, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        if event_id not in self.events:
            raise EventNotFoundError(event_id)
        self.events[event_id].update(body)
        return dict(self.events[event_id])

    async def delete_event(self, ctx: RequestContext, event_id: str) -> None:
        if event_id in self.fail_delete_ids:
            raise CalendarBackendError("Calendar API request failed (500)", status_code=500)
        if event_id not in self.events:
            raise EventNotFoundError(event_id)
        del self.events[event_id]


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(user_id="user-1", access_token="token")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FakeCalendarBackend:
    return FakeCalendarBackend()


@pytest.fixture
def shared(clock: FakeClock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=clock)


@pytest.fixture
def cache(shared: InMemoryCacheBackend, clock: FakeClock) -> EventCache:
    return EventCache(shared, UTC, clock=clock)


@pytest.fixture
def engine(cache: EventCache, backend: FakeCalendarBackend) -> AvailabilityEngine:
    return AvailabilityEngine(cache, backend)


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(tmp_path / "assistant.db")
    database.initialize()
    return database


@pytest.fixture
def kit(backend: FakeCalendarBackend, cache: EventCache, engine: AvailabilityEngine, db: Database) -> CalendarToolkit:
    return CalendarToolkit(backend, cache, engine, db=db, clock=lambda: NOW)
