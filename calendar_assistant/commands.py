"""Command dispatcher for @-prefixed messages.

Commands bypass the LLM and read the calendar directly.
An unrecognised @command returns None, letting it fall through to the LLM.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from calendar_assistant.errors import CalendarBackendError
from calendar_assistant.models import RequestContext
from calendar_assistant.scheduling.events import day_start
from calendar_assistant.scheduling.slots import PREFERENCES, find_slots, format_slots
from calendar_assistant.tools.calendar_tools import DEFAULT_SEARCH_DAYS, format_events

if TYPE_CHECKING:
    from calendar_assistant.tools.calendar_tools import CalendarToolkit

LOGGER = logging.getLogger(__name__)

_SUGGEST_USAGE = f"Usage: @suggest <minutes> [{'|'.join(PREFERENCES)}] [activity]"


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split an @-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid @command.
    """
    text = text.strip()
    if not text.startswith("@"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


@dataclass(slots=True)
class CommandReply:
    text: str
    start_new: bool = False


class CommandDispatcher:
    """Routes @-prefixed messages to calendar shortcuts, bypassing the LLM.

    Returns None for unrecognised commands so the caller can fall through.
    """

    def __init__(self, kit: CalendarToolkit | None = None) -> None:
        self._kit = kit

    async def dispatch(self, text: str, context: RequestContext) -> CommandReply | None:
        parsed = parse_command(text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command == "new":
            return CommandReply("Started a new conversation.", start_new=True)
        if command == "today":
            return CommandReply(await self._handle_today(context))
        if command == "suggest":
            return CommandReply(await self._handle_suggest(args, context))
        return None

    async def _handle_today(self, context: RequestContext) -> str:
        if self._kit is None:
            return "Calendar is not configured."
        kit = self._kit
        now = kit.now().astimezone(kit.tz)
        start = day_start(now.date(), kit.tz)
        try:
            events = await kit.cache.get_events(context, start, start + timedelta(days=1), kit.backend)
        except CalendarBackendError as exc:
            return f"Could not load today's events: {exc}"
        if not events:
            return "No events scheduled for today."
        events = kit.attach_metadata(context.user_id, events)
        return f"Today's events ({now:%A, %B %d}):\n{format_events(events, kit.tz)}"

    async def _handle_suggest(self, args: list[str], context: RequestContext) -> str:
        if self._kit is None:
            return "Calendar is not configured."
        if not args:
            return _SUGGEST_USAGE
        try:
            duration = float(args[0])
        except ValueError:
            return _SUGGEST_USAGE
        if duration <= 0:
            return _SUGGEST_USAGE

        rest = args[1:]
        preference = "any"
        if rest and rest[0].lower() in PREFERENCES:
            preference = rest[0].lower()
            rest = rest[1:]
        activity = " ".join(rest) or "event"

        kit = self._kit
        start = kit.now()
        end = start + timedelta(days=DEFAULT_SEARCH_DAYS)
        try:
            busy = await kit.engine.busy_intervals(context, start, end)
        except CalendarBackendError as exc:
            return f"Could not load your calendar: {exc}"
        slots = find_slots(
            busy,
            duration,
            start,
            end,
            preference=preference,
            activity=activity,
            working_hours=kit.engine.working_hours,
            tz=kit.tz,
        )
        return format_slots(slots)
