"""Projection of calendar event payloads onto intervals used by scheduling math."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

from calendar_assistant.models import BusyInterval, CandidateInterval

BLOCKING_KEYWORDS = ("meeting", "appointment", "interview", "call", "conference")


def parse_timestamp(value: str, tz: tzinfo) -> datetime:
    """Parse an ISO-8601 date or timestamp into an aware datetime.

    Date-only values resolve to midnight and naive timestamps are read in
    ``tz``. Raises ValueError for anything else.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid ISO-8601 value: {value!r}")
    text = value.strip()
    if len(text) == 10:
        return datetime.combine(date.fromisoformat(text), time.min, tzinfo=tz)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def day_start(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def is_all_day(event: dict[str, Any]) -> bool:
    start = event.get("start") or {}
    return bool(start.get("date")) and not start.get("dateTime")


def raw_bounds(event: dict[str, Any]) -> tuple[str | None, str | None]:
    start = event.get("start") or {}
    end = event.get("end") or {}
    return (start.get("dateTime") or start.get("date"), end.get("dateTime") or end.get("date"))


def event_interval(event: dict[str, Any], tz: tzinfo) -> CandidateInterval | None:
    """Return the half-open interval an event occupies, or None if it is malformed."""

    raw_start, raw_end = raw_bounds(event)
    if not raw_start or not raw_end:
        return None
    try:
        start = parse_timestamp(raw_start, tz)
        end = parse_timestamp(raw_end, tz)
        if is_all_day(event) and end <= start:
            end = start + timedelta(days=1)
        return CandidateInterval(start=start, end=end)
    except ValueError:
        return None


def is_blocking(busy: BusyInterval) -> bool:
    """All-day entries only block time when their label names a commitment."""

    if not busy.is_all_day:
        return True
    label = busy.label.lower()
    return any(keyword in label for keyword in BLOCKING_KEYWORDS)


def to_busy_interval(event: dict[str, Any], tz: tzinfo) -> BusyInterval | None:
    interval = event_interval(event, tz)
    if interval is None:
        return None
    return BusyInterval(
        interval=interval,
        label=str(event.get("summary") or "(No Title)"),
        is_all_day=is_all_day(event),
    )


def busy_intervals(events: list[dict[str, Any]], tz: tzinfo, blocking_only: bool = True) -> list[BusyInterval]:
    result = []
    for event in events:
        busy = to_busy_interval(event, tz)
        if busy is None:
            continue
        if blocking_only and not is_blocking(busy):
            continue
        result.append(busy)
    return result


def overlaps_window(event: dict[str, Any], start: datetime, end: datetime, tz: tzinfo) -> bool:
    interval = event_interval(event, tz)
    return interval is not None and interval.start < end and start < interval.end
