"""Free-slot generation and ranking."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from typing import Iterator

from calendar_assistant.models import BusyInterval, CandidateInterval, Slot

GRID = timedelta(minutes=30)
ADJACENCY_BUFFER = timedelta(minutes=30)
MAX_SUGGESTIONS = 3

PREFERENCE_WINDOWS: dict[str, tuple[int, int]] = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 21),
}
PREFERENCES = (*PREFERENCE_WINDOWS, "any")
STANDARD_HOURS = (9, 17)

_MEAL_WORDS = ("lunch", "meal", "eat")
_WORK_WORDS = ("work", "meeting", "call")
_EXERCISE_WORDS = ("exercise", "workout", "gym")


@dataclass(slots=True, frozen=True)
class WorkingHours:
    """Days and hours in which slots may be proposed. Days are ISO weekdays."""

    start_hour: int = 9
    end_hour: int = 17
    work_days: frozenset[int] = field(default_factory=lambda: frozenset({1, 2, 3, 4, 5}))


DEFAULT_WORKING_HOURS = WorkingHours()


def matches_preference(hour: int, preference: str) -> bool:
    window = PREFERENCE_WINDOWS.get(preference)
    if window is None:
        return True
    return window[0] <= hour < window[1]


def find_slots(
    busy: list[BusyInterval],
    duration_minutes: float,
    search_start: datetime,
    search_end: datetime,
    preference: str = "any",
    activity: str = "event",
    working_hours: WorkingHours = DEFAULT_WORKING_HOURS,
    tz: tzinfo | None = None,
    limit: int = MAX_SUGGESTIONS,
) -> list[Slot]:
    """Return up to ``limit`` free slots ranked by score, earliest first on ties.

    Every interval in ``busy`` is treated as blocking; callers drop
    non-blocking entries beforehand.
    """
    if duration_minutes <= 0:
        raise ValueError("Duration must be positive")
    if preference not in PREFERENCES:
        raise ValueError(f"Unknown time preference: {preference}")

    zone = tz or search_start.tzinfo
    start = search_start.astimezone(zone)
    end = search_end.astimezone(zone)
    if start >= end:
        return []

    duration = timedelta(minutes=duration_minutes)
    slots = [
        _evaluate(interval, busy, activity, preference)
        for interval in _candidates(start, end, duration, busy, preference, working_hours, zone)
    ]
    slots.sort(key=lambda s: (-s.score, s.interval.start))
    return slots[:limit]


def _align_to_grid(moment: datetime) -> datetime:
    hour_start = moment.replace(minute=0, second=0, microsecond=0)
    steps = math.ceil((moment - hour_start) / GRID)
    return hour_start + steps * GRID


def _candidates(
    start: datetime,
    end: datetime,
    duration: timedelta,
    busy: list[BusyInterval],
    preference: str,
    working_hours: WorkingHours,
    zone: tzinfo,
) -> Iterator[CandidateInterval]:
    first = _align_to_grid(start)
    day = first.date()
    while day <= end.date():
        if day.isoweekday() in working_hours.work_days:
            window_start = datetime.combine(day, time.min, tzinfo=zone) + timedelta(hours=working_hours.start_hour)
            window_end = datetime.combine(day, time.min, tzinfo=zone) + timedelta(hours=working_hours.end_hour)
            cursor = max(window_start, first)
            limit = min(window_end, end)
            while cursor + duration <= limit:
                candidate = CandidateInterval(start=cursor, end=cursor + duration)
                if matches_preference(cursor.hour, preference) and not any(
                    b.interval.overlaps(candidate) for b in busy
                ):
                    yield candidate
                cursor += GRID
        day += timedelta(days=1)


def _evaluate(interval: CandidateInterval, busy: list[BusyInterval], activity: str, preference: str) -> Slot:
    pros, cons = pros_and_cons(interval, busy, activity, preference)
    return Slot(interval=interval, pros=pros, cons=cons, score=score_slot(interval, pros, cons, preference))


def pros_and_cons(
    interval: CandidateInterval,
    busy: list[BusyInterval],
    activity: str,
    preference: str,
) -> tuple[list[str], list[str]]:
    """Explain a slot. Every slot gets at least one pro and one con."""

    pros: list[str] = []
    cons: list[str] = []
    hour = interval.start.hour
    weekday = interval.start.isoweekday()
    activity_lower = (activity or "").lower()

    if preference in PREFERENCE_WINDOWS:
        if matches_preference(hour, preference):
            pros.append(f"Matches your {preference} time preference")
        else:
            cons.append(f"Outside your preferred {preference} time")

    if hour < 8:
        cons.append("Early morning slot may be difficult to attend")
    elif hour >= 20:
        cons.append("Late evening slot may interfere with personal time")

    if _in_standard_hours(hour):
        pros.append("During standard working hours")

    if 12 <= hour < 14:
        if any(word in activity_lower for word in _MEAL_WORDS):
            pros.append("Ideal time for a meal")
        else:
            cons.append("May conflict with lunch time")

    before = after = False
    for entry in busy:
        if entry.interval.end <= interval.start <= entry.interval.end + ADJACENCY_BUFFER:
            before = True
            pros.append(f'Convenient timing after "{entry.label}"')
        if entry.interval.start - ADJACENCY_BUFFER <= interval.end <= entry.interval.start:
            after = True
            pros.append(f'Convenient timing before "{entry.label}"')
    if before and after:
        pros.append("Efficiently uses gap between events")

    if weekday == 1:
        if hour < 11:
            cons.append("Early Monday morning may be busy with weekly planning")
        else:
            pros.append("Good for setting the tone for the week")
    elif weekday == 5:
        if hour >= 15:
            cons.append("Late Friday may conflict with weekend plans")
        else:
            pros.append("Good for wrapping up the week")
    elif weekday in (6, 7):
        if any(word in activity_lower for word in _WORK_WORDS):
            cons.append("Weekend slot for work-related activity")
        else:
            pros.append("Weekend slot good for personal activities")

    if any(word in activity_lower for word in _EXERCISE_WORDS):
        if 6 <= hour < 9:
            pros.append("Morning exercise can boost energy for the day")
        elif 17 <= hour < 20:
            pros.append("Evening exercise can help unwind after work")

    if not pros:
        pros.append("Available time slot that fits your schedule")
    if not cons:
        if weekday <= 5 and not _in_standard_hours(hour):
            cons.append("Outside standard working hours")
        else:
            cons.append("No significant drawbacks identified")
    return pros, cons


def score_slot(interval: CandidateInterval, pros: list[str], cons: list[str], preference: str) -> float:
    hour = interval.start.hour
    score = 10 * len(pros) - 8 * len(cons)
    if preference in PREFERENCE_WINDOWS and matches_preference(hour, preference):
        score += 15
    if _in_standard_hours(hour):
        score += 5
    # Earlier hours win ties.
    return score - 0.1 * hour


def _in_standard_hours(hour: int) -> bool:
    return STANDARD_HOURS[0] <= hour < STANDARD_HOURS[1]


def format_slots(slots: list[Slot]) -> str:
    """Render slots as a numbered list with their pros and cons."""

    if not slots:
        return "No available slots found."
    blocks = []
    for index, slot in enumerate(slots, start=1):
        start = slot.interval.start
        end = slot.interval.end
        lines = [f"Option {index}: {start:%a, %b %d} from {clock_label(start)} to {clock_label(end)}", "Pros:"]
        lines.extend(f"- {pro}" for pro in slot.pros)
        lines.append("Cons:")
        lines.extend(f"- {con}" for con in slot.cons)
        blocks.append("\n".join(lines))
    return "Available time slots:\n\n" + "\n\n".join(blocks)


def clock_label(moment: datetime) -> str:
    return moment.strftime("%I:%M %p").lstrip("0")
