"""Calendar backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from calendar_assistant.models import RequestContext


class CalendarBackend(ABC):
    """Event store consumed by tool handlers and the availability engine.

    Events are Google Calendar shaped dicts: ``id``, ``summary``, and
    ``start``/``end`` objects carrying either ``dateTime`` or ``date``.
    """

    @abstractmethod
    async def list_events(self, ctx: RequestContext, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Return single events overlapping [start, end), ordered by start time."""

    @abstractmethod
    async def get_event(self, ctx: RequestContext, event_id: str) -> dict[str, Any]:
        """Return one event or raise EventNotFoundError."""

    @abstractmethod
    async def insert_event(self, ctx: RequestContext, body: dict[str, Any]) -> dict[str, Any]:
        """Create an event and return it as stored."""

    @abstractmethod
    async def patch_event(self, ctx: RequestContext, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update and return the updated event."""

    @abstractmethod
    async def delete_event(self, ctx: RequestContext, event_id: str) -> None:
        """Delete an event or raise EventNotFoundError."""
