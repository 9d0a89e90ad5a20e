"""Conflict detection for a candidate interval, with alternative suggestions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import TYPE_CHECKING

from calendar_assistant.cache.events import EventCache
from calendar_assistant.models import BusyInterval, CandidateInterval, ConflictResult, RequestContext
from calendar_assistant.scheduling.events import busy_intervals
from calendar_assistant.scheduling.slots import DEFAULT_WORKING_HOURS, WorkingHours, find_slots

if TYPE_CHECKING:
    from calendar_assistant.gcal.base import CalendarBackend

LOGGER = logging.getLogger(__name__)

CONFLICT_MARGIN = timedelta(hours=1)
SUGGESTION_WINDOW = timedelta(hours=12)


class AvailabilityEngine:
    """Reads busy time through the event cache; never writes to it."""

    def __init__(
        self,
        cache: EventCache,
        backend: CalendarBackend,
        working_hours: WorkingHours = DEFAULT_WORKING_HOURS,
        tz: tzinfo | None = None,
    ) -> None:
        self.cache = cache
        self.backend = backend
        self.working_hours = working_hours
        self.tz = tz or cache.timezone

    async def busy_intervals(
        self,
        ctx: RequestContext,
        start: datetime,
        end: datetime,
        blocking_only: bool = True,
    ) -> list[BusyInterval]:
        events = await self.cache.get_events(ctx, start, end, self.backend)
        return busy_intervals(events, self.tz, blocking_only=blocking_only)

    async def check_conflict(
        self,
        ctx: RequestContext,
        candidate: CandidateInterval,
        override_requested: bool = False,
        activity: str = "event",
    ) -> ConflictResult:
        """Decide whether ``candidate`` collides with blocking commitments.

        Any failure while reading busy time reports a conflict with the error
        attached, so scheduling never proceeds on unknown availability.
        """
        try:
            nearby = await self.busy_intervals(
                ctx, candidate.start - CONFLICT_MARGIN, candidate.end + CONFLICT_MARGIN
            )
            overlapping = [busy for busy in nearby if busy.interval.overlaps(candidate)]
            if not overlapping:
                return ConflictResult(conflict=False)

            if override_requested:
                LOGGER.info(
                    "Conflict override for %s: %d overlapping event(s)",
                    candidate.start.isoformat(),
                    len(overlapping),
                )
                return ConflictResult(conflict=False, overridden=True, conflict_count=len(overlapping))

            window_start = candidate.start - SUGGESTION_WINDOW
            window_end = candidate.end + SUGGESTION_WINDOW
            busy = await self.busy_intervals(ctx, window_start, window_end)
            suggestions = find_slots(
                busy,
                candidate.duration_minutes,
                window_start,
                window_end,
                activity=activity,
                working_hours=self.working_hours,
                tz=self.tz,
            )
            LOGGER.info(
                "Conflict for %s with %d event(s); %d suggestion(s)",
                candidate.start.isoformat(),
                len(overlapping),
                len(suggestions),
            )
            return ConflictResult(conflict=True, suggestions=suggestions, conflict_count=len(overlapping))
        except Exception as exc:
            LOGGER.exception("Conflict check failed; treating %s as busy", candidate.start.isoformat())
            return ConflictResult(conflict=True, error=str(exc) or exc.__class__.__name__)
