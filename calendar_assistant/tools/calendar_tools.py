"""Calendar tools: create, query, update and delete events, and find free time.

Every handler that changes the calendar invalidates the cached day ranges
around the affected interval(s) once the backend write has succeeded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable

from calendar_assistant.cache.events import EventCache
from calendar_assistant.db import Database
from calendar_assistant.errors import CalendarBackendError, EventNotFoundError, ToolValidationError
from calendar_assistant.gcal.base import CalendarBackend
from calendar_assistant.models import CandidateInterval, ConflictResult, RequestContext, Slot
from calendar_assistant.scheduling.conflicts import AvailabilityEngine
from calendar_assistant.scheduling.events import busy_intervals, event_interval, is_all_day, parse_timestamp
from calendar_assistant.scheduling.slots import PREFERENCES, clock_label, find_slots, format_slots
from calendar_assistant.tools.base import Tool
from calendar_assistant.tools.results import Conflict, Err, ErrorKind, HandlerResult, Ok

LOGGER = logging.getLogger(__name__)

PRIORITIES = ["Low", "Medium", "High", "Urgent"]
DEFAULT_SEARCH_DAYS = 7


class CalendarToolkit:
    """Collaborators shared by the calendar tools."""

    def __init__(
        self,
        backend: CalendarBackend,
        cache: EventCache,
        engine: AvailabilityEngine,
        db: Database | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.engine = engine
        self.db = db
        self.tz: tzinfo = cache.timezone
        self._clock = clock

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(self.tz)

    async def invalidate(self, user_id: str, interval: CandidateInterval | None) -> None:
        if interval is None:
            await self.cache.invalidate_user(user_id)
        else:
            await self.cache.invalidate(user_id, interval.start, interval.end)

    def attach_metadata(self, user_id: str, events: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if self.db is None or not events:
            return events
        ids = [event["id"] for event in events if event.get("id")]
        try:
            metadata = self.db.get_event_metadata(user_id, ids)
        except Exception:
            LOGGER.exception("Failed to load event metadata; returning events without it")
            return events
        enriched = []
        for event in events:
            extra = metadata.get(event.get("id"), {})
            fields = {}
            if extra.get("priority"):
                fields["priority"] = extra["priority"]
            if extra.get("tags"):
                fields["tags"] = extra["tags"]
            enriched.append({**event, **fields} if fields else event)
        return enriched

    def save_metadata(self, user_id: str, event_id: str, priority: str | None, tags: list[str] | None) -> str | None:
        """Store priority/tags; returns an error message instead of raising."""
        if self.db is None:
            return None
        try:
            self.db.upsert_event_metadata(user_id, event_id, priority=priority, tags=tags)
        except Exception as exc:
            LOGGER.exception("Failed to save metadata for event %s", event_id)
            return f"Failed to save metadata: {exc}"
        return None

    def merge_metadata(self, user_id: str, event_id: str, updates: dict[str, Any]) -> str | None:
        if self.db is None:
            return None
        try:
            self.db.update_event_metadata(user_id, event_id, updates)
        except Exception as exc:
            LOGGER.exception("Failed to update metadata for event %s", event_id)
            return f"Failed to save metadata: {exc}"
        return None

    def drop_metadata(self, user_id: str, event_id: str) -> None:
        if self.db is None:
            return
        try:
            self.db.delete_event_metadata(user_id, event_id)
        except Exception:
            LOGGER.exception("Failed to delete metadata for event %s", event_id)


class CalendarTool(Tool):
    def __init__(self, kit: CalendarToolkit) -> None:
        self.kit = kit


def parse_range(start_value: str, end_value: str, tz: tzinfo) -> CandidateInterval:
    try:
        start = parse_timestamp(start_value, tz)
        end = parse_timestamp(end_value, tz)
    except ValueError as exc:
        raise ToolValidationError(f"Invalid date format ({exc}). Use ISO 8601.") from exc
    if start >= end:
        raise ToolValidationError("Start date must be before end date.")
    return CandidateInterval(start=start, end=end)


def format_events(events: list[dict[str, Any]], tz: tzinfo) -> str:
    """Render events one per line with their ids, times, and metadata."""

    lines = []
    for event in events:
        title = event.get("summary") or "(No Title)"
        head = f"- {title} [ID: {event.get('id', '?')}]"
        interval = event_interval(event, tz)
        if interval is None:
            lines.append(f"{head} (invalid dates)")
            continue
        start = interval.start.astimezone(tz)
        if is_all_day(event):
            line = f"{head} {start:%a, %b %d} (all day)"
        else:
            line = f"{head} {start:%a, %b %d} {clock_label(start)} - {clock_label(interval.end.astimezone(tz))}"
        if event.get("location"):
            line += f" @ {event['location']}"
        if event.get("priority"):
            line += f" [Priority: {event['priority']}]"
        if event.get("tags"):
            line += f" [Tags: {', '.join(event['tags'])}]"
        lines.append(line)
    return "\n".join(lines)


def _event_body(spec: dict[str, Any], interval: CandidateInterval) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": spec["summary"],
        "start": {"dateTime": interval.start.isoformat()},
        "end": {"dateTime": interval.end.isoformat()},
    }
    if spec.get("description"):
        body["description"] = spec["description"]
    if spec.get("location"):
        body["location"] = spec["location"]
    if spec.get("reminders"):
        body["reminders"] = {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": int(minutes)} for minutes in spec["reminders"]],
        }
    return body


def _start_label(event: dict[str, Any], tz: tzinfo) -> str:
    interval = event_interval(event, tz)
    if interval is None:
        return "at an unknown time"
    start = interval.start.astimezone(tz)
    if is_all_day(event):
        return f"{start:%a, %b %d} (all day)"
    return f"{start:%a, %b %d} at {clock_label(start)}"


class AddEventsTool(CalendarTool):
    name = "add_events"
    description = (
        "Create one or more events in the user's primary calendar. Resolve relative times "
        "into absolute ISO 8601 timestamps with an offset before calling; assume a 1 hour "
        "duration when no end is given. Each event is checked for conflicts first; set "
        "override_conflicts only after the user confirmed a conflicting time."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "events": {
                "type": "array",
                "description": "One or more events to create.",
                "items": {
                    "type": "object",
                    "properties": {
                        "summary": {"type": "string", "description": "Event title."},
                        "start": {"type": "string", "description": "Start, ISO 8601 with offset."},
                        "end": {"type": "string", "description": "End, ISO 8601 with offset."},
                        "description": {"type": "string"},
                        "location": {"type": "string"},
                        "reminders": {
                            "type": "array",
                            "items": {"type": "number"},
                            "description": "Reminder offsets in minutes before the start.",
                        },
                        "priority": {"type": "string", "enum": PRIORITIES},
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "override_conflicts": {
                            "type": "boolean",
                            "description": "Add the event even if it conflicts. Defaults to false.",
                        },
                    },
                    "required": ["summary", "start", "end"],
                    "additionalProperties": False,
                },
            },
        },
        "required": ["events"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        specs: list[dict[str, Any]] = kwargs["events"]
        if not specs:
            raise ToolValidationError("No event data provided.")

        items: list[dict[str, Any]] = []
        conflicts: list[ConflictResult] = []
        failure_kinds: list[ErrorKind] = []
        # Sequential so each conflict check sees the events added before it.
        for spec in specs:
            item, check, kind = await self._add_one(context, spec)
            items.append(item)
            if check is not None:
                conflicts.append(check)
            if kind is not None:
                failure_kinds.append(kind)

        added = sum(1 for item in items if item.get("success"))
        payload = {"results": items, "added": added, "failed": len(items) - added}
        if conflicts:
            return Conflict(payload={**payload, "conflict": True}, suggestions=conflicts[0].suggestions)
        if added == 0:
            kind = ErrorKind.VALIDATION if all(k is ErrorKind.VALIDATION for k in failure_kinds) else ErrorKind.BACKEND
            message = "; ".join(f'"{item.get("summary", "?")}": {item.get("error")}' for item in items)
            return Err(kind, message)
        return Ok(payload)

    async def _add_one(
        self, context: RequestContext, spec: dict[str, Any]
    ) -> tuple[dict[str, Any], ConflictResult | None, ErrorKind | None]:
        summary = spec["summary"]
        try:
            interval = CandidateInterval(
                start=parse_timestamp(spec["start"], self.kit.tz),
                end=parse_timestamp(spec["end"], self.kit.tz),
            )
        except ValueError as exc:
            error = f"Invalid date format or logic: {exc}. Use ISO 8601 format."
            return {"summary": summary, "success": False, "error": error}, None, ErrorKind.VALIDATION

        check = await self.kit.engine.check_conflict(
            context, interval, override_requested=bool(spec.get("override_conflicts")), activity=summary
        )
        if check.conflict:
            item = {
                "summary": summary,
                "start": interval.start.isoformat(),
                "end": interval.end.isoformat(),
                "success": False,
                **check.to_payload(),
            }
            return item, check, None

        try:
            created = await self.kit.backend.insert_event(context, _event_body(spec, interval))
        except CalendarBackendError as exc:
            LOGGER.error("Failed to create event %r: %s", summary, exc)
            kind = ErrorKind.AUTH if exc.status_code in (401, 403) else ErrorKind.BACKEND
            return {"summary": summary, "success": False, "error": f"Failed to create event: {exc}"}, None, kind

        await self.kit.invalidate(context.user_id, interval)
        item = {**created, "success": True}
        if check.overridden:
            item["conflictOverridden"] = True
            item["conflictCount"] = check.conflict_count

        priority, tags = spec.get("priority"), spec.get("tags")
        if priority or tags:
            error = self.kit.save_metadata(context.user_id, created.get("id", ""), priority, tags)
            if error:
                item["metadataError"] = error
            if priority:
                item["priority"] = priority
            if tags:
                item["tags"] = tags
        LOGGER.info("Event added: %r (%s)", summary, created.get("id"))
        return item, None, None

    def summarize(self, payload: Any) -> str:
        return "\n".join(self._describe(item) for item in payload["results"])

    def summarize_conflict(self, result: Conflict) -> str:
        return self.summarize(result.payload)

    def _describe(self, item: dict[str, Any]) -> str:
        summary = item.get("summary", "?")
        if item.get("conflict"):
            if item.get("error"):
                return f'Conflict assumed for event "{summary}": availability could not be verified ({item["error"]}).'
            suggestions = [Slot.from_payload(s) for s in item.get("suggestions", [])]
            text = f'Conflict detected for event "{summary}".'
            if suggestions:
                text += " Suggested slots: " + ", ".join(
                    f"{s.interval.start:%a %b %d} {clock_label(s.interval.start)} - {clock_label(s.interval.end)}"
                    for s in suggestions
                )
            return text
        if not item.get("success"):
            return f'Failed to add event "{summary}": {item.get("error")}'
        text = f'Event added: "{summary}" starting {_start_label(item, self.kit.tz)} (ID: {item.get("id")})'
        if item.get("priority"):
            text += f" [Priority: {item['priority']}]"
        if item.get("conflictOverridden"):
            text += f" despite {item['conflictCount']} conflicting event(s)"
        return text


class GetEventsTool(CalendarTool):
    name = "get_events"
    description = "List events in the user's primary calendar within a date range."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "start_date": {"type": "string", "description": "Range start, ISO 8601 date or timestamp."},
            "end_date": {"type": "string", "description": "Range end (exclusive), ISO 8601 date or timestamp."},
        },
        "required": ["start_date", "end_date"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        window = parse_range(kwargs["start_date"], kwargs["end_date"], self.kit.tz)
        events = await self.kit.cache.get_events(context, window.start, window.end, self.kit.backend)
        events = self.kit.attach_metadata(context.user_id, events)
        return Ok({"events": events, "count": len(events)})

    def summarize(self, payload: Any) -> str:
        if not payload["count"]:
            return "No events found for the specified time period."
        return f"Found {payload['count']} event(s):\n{format_events(payload['events'], self.kit.tz)}"


class DeleteEventTool(CalendarTool):
    name = "delete_event"
    description = (
        "Delete one event by id. If the user names an event by title or time, "
        "call get_events first to find its id."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"event_id": {"type": "string", "description": "Id of the event to delete."}},
        "required": ["event_id"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        event_id = kwargs["event_id"]
        try:
            event = await self.kit.backend.get_event(context, event_id)
        except EventNotFoundError:
            # The desired end state already holds.
            return Ok({"success": True, "event_id": event_id, "summary": event_id, "already_deleted": True})
        try:
            await self.kit.backend.delete_event(context, event_id)
        except EventNotFoundError:
            LOGGER.info("Event %s disappeared before delete", event_id)

        self.kit.drop_metadata(context.user_id, event_id)
        await self.kit.invalidate(context.user_id, event_interval(event, self.kit.tz))
        summary = event.get("summary") or event_id
        LOGGER.info("Event deleted: %r (%s)", summary, event_id)
        return Ok({"success": True, "event_id": event_id, "summary": summary})

    def summarize(self, payload: Any) -> str:
        if payload.get("already_deleted"):
            return f"Event {payload['event_id']} not found (already deleted?)."
        return f'Event "{payload["summary"]}" deleted.'


class UpdateEventTool(CalendarTool):
    name = "update_event"
    description = (
        "Update an existing event by id. Include only the fields that change; "
        "times are ISO 8601 with offset."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "event_id": {"type": "string", "description": "Id of the event to update."},
            "updates": {
                "type": "object",
                "description": "At least one field to change.",
                "properties": {
                    "summary": {"type": "string"},
                    "description": {"type": "string"},
                    "location": {"type": "string"},
                    "start": {"type": "string"},
                    "end": {"type": "string"},
                    "priority": {"type": "string", "enum": PRIORITIES},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
        "required": ["event_id", "updates"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        event_id = kwargs["event_id"]
        updates: dict[str, Any] = kwargs["updates"]
        if not updates:
            raise ToolValidationError("The updates object must contain at least one field.")

        try:
            new_start = parse_timestamp(updates["start"], self.kit.tz) if "start" in updates else None
            new_end = parse_timestamp(updates["end"], self.kit.tz) if "end" in updates else None
        except ValueError as exc:
            raise ToolValidationError(f"Invalid update data: {exc}. Use ISO 8601 format.") from exc

        original = await self.kit.backend.get_event(context, event_id)
        original_interval = event_interval(original, self.kit.tz)
        final_start = new_start or (original_interval.start if original_interval else None)
        final_end = new_end or (original_interval.end if original_interval else None)
        if final_start is not None and final_end is not None and final_start >= final_end:
            raise ToolValidationError("Start time must be before end time after updates are applied.")

        body: dict[str, Any] = {
            field: updates[field] for field in ("summary", "description", "location") if field in updates
        }
        if new_start is not None:
            body["start"] = {"dateTime": new_start.isoformat()}
        if new_end is not None:
            body["end"] = {"dateTime": new_end.isoformat()}
        updated = await self.kit.backend.patch_event(context, event_id, body) if body else dict(original)

        result = {**updated, "success": True}
        if "priority" in updates or "tags" in updates:
            error = self.kit.merge_metadata(context.user_id, event_id, updates)
            if error:
                result["metadataError"] = error
            for field in ("priority", "tags"):
                if updates.get(field):
                    result[field] = updates[field]

        new_interval = event_interval(updated, self.kit.tz)
        if original_interval is None and new_interval is None:
            await self.kit.invalidate(context.user_id, None)
        else:
            for interval in {original_interval, new_interval} - {None}:
                await self.kit.invalidate(context.user_id, interval)
        LOGGER.info("Event updated: %s", event_id)
        return Ok(result)

    def summarize(self, payload: Any) -> str:
        text = f'Event "{payload.get("summary") or payload.get("id")}" updated (ID: {payload.get("id")})'
        if payload.get("priority"):
            text += f" [Priority: {payload['priority']}]"
        return text + "."


class FindAvailableSlotsTool(CalendarTool):
    name = "find_available_slots"
    description = (
        "Find up to three free time slots of a given duration in the user's calendar, "
        "ranked with pros and cons. Searches the next 7 days when no range is given."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "duration": {"type": "number", "description": "Duration in minutes."},
            "start_date": {"type": "string", "description": "Search start, ISO 8601. Defaults to now."},
            "end_date": {"type": "string", "description": "Search end, ISO 8601. Defaults to 7 days after start."},
            "time_preference": {"type": "string", "enum": list(PREFERENCES)},
            "activity": {"type": "string", "description": "Kind of activity, e.g. meeting, workout, lunch."},
        },
        "required": ["duration"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        duration = float(kwargs["duration"])
        if duration <= 0:
            raise ToolValidationError("Valid duration (in minutes) is required.")
        tz = self.kit.tz
        try:
            start = parse_timestamp(kwargs["start_date"], tz) if kwargs.get("start_date") else self.kit.now()
            end = (
                parse_timestamp(kwargs["end_date"], tz)
                if kwargs.get("end_date")
                else start + timedelta(days=DEFAULT_SEARCH_DAYS)
            )
        except ValueError as exc:
            raise ToolValidationError(f"Invalid date format ({exc}). Use ISO 8601.") from exc
        if start >= end:
            raise ToolValidationError("Start date must be before end date.")

        events = await self.kit.cache.get_events(context, start, end, self.kit.backend)
        slots = find_slots(
            busy_intervals(events, tz),
            duration,
            start,
            end,
            preference=kwargs.get("time_preference") or "any",
            activity=kwargs.get("activity") or "event",
            working_hours=self.kit.engine.working_hours,
            tz=tz,
        )
        return Ok({"slots": [slot.to_payload() for slot in slots], "count": len(slots)})

    def summarize(self, payload: Any) -> str:
        if not payload["count"]:
            return "No available slots found matching the criteria."
        return format_slots([Slot.from_payload(item) for item in payload["slots"]])


class DeleteEventsByQueryTool(CalendarTool):
    name = "delete_events_by_query"
    description = (
        "Delete every event in a date range whose title contains the query "
        "(case-insensitive). Use with caution."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Text to match against event titles."},
            "start_date": {"type": "string", "description": "Range start, ISO 8601."},
            "end_date": {"type": "string", "description": "Range end, ISO 8601."},
        },
        "required": ["query", "start_date", "end_date"],
        "additionalProperties": False,
    }

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        query = kwargs["query"].strip()
        if not query:
            raise ToolValidationError("Query must not be empty.")
        window = parse_range(kwargs["start_date"], kwargs["end_date"], self.kit.tz)

        events = await self.kit.cache.get_events(context, window.start, window.end, self.kit.backend)
        needle = query.lower()
        matching = [event for event in events if needle in (event.get("summary") or "").lower()]
        if not matching:
            return Ok({"success": True, "message": f'No events matching "{query}" found.', "deleted_count": 0, "count": 0})

        deleted: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        for event in matching:
            event_id = event.get("id", "")
            try:
                await self.kit.backend.delete_event(context, event_id)
            except EventNotFoundError:
                pass
            except CalendarBackendError as exc:
                LOGGER.error("Failed to delete event %s during bulk delete: %s", event_id, exc)
                failed.append({"id": event_id, "summary": event.get("summary"), "error": str(exc)})
                continue
            self.kit.drop_metadata(context.user_id, event_id)
            deleted.append({"id": event_id, "summary": event.get("summary")})
            await self.kit.invalidate(context.user_id, event_interval(event, self.kit.tz))

        message = f'Deleted {len(deleted)} event(s) matching "{query}".'
        if failed:
            message += f" Failed to delete {len(failed)} event(s)."
        return Ok(
            {
                "success": not failed,
                "message": message,
                "deleted_count": len(deleted),
                "count": len(deleted),
                "deleted_items": deleted,
                "failed_items": failed,
            }
        )

    def summarize(self, payload: Any) -> str:
        text = payload["message"]
        for item in payload.get("failed_items", []):
            text += f'\n- "{item.get("summary")}" ({item["id"]}): {item["error"]}'
        return text


def calendar_tools(kit: CalendarToolkit) -> list[Tool]:
    return [
        AddEventsTool(kit),
        GetEventsTool(kit),
        DeleteEventTool(kit),
        UpdateEventTool(kit),
        FindAvailableSlotsTool(kit),
        DeleteEventsByQueryTool(kit),
    ]
