"""Application entrypoint: an interactive calendar assistant on stdin/stdout."""

from __future__ import annotations

import asyncio
import logging
import sys

from calendar_assistant.agent_runtime import AgentRuntime
from calendar_assistant.cache.backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from calendar_assistant.cache.events import EventCache
from calendar_assistant.commands import CommandDispatcher
from calendar_assistant.config import Settings, load_settings, user_zone, working_hours
from calendar_assistant.db import Database
from calendar_assistant.gcal.google import GoogleCalendarBackend
from calendar_assistant.llm.openrouter import OpenRouterProvider
from calendar_assistant.models import TurnEvent
from calendar_assistant.persistence import MessageRecorder
from calendar_assistant.scheduling.conflicts import AvailabilityEngine
from calendar_assistant.tools.calendar_tools import CalendarToolkit, calendar_tools
from calendar_assistant.tools.preference_tool import SavePreferenceTool
from calendar_assistant.tools.registry import ToolRegistry
from calendar_assistant.tools.weather_tool import WeatherTool

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


def build_cache_backend(settings: Settings) -> CacheBackend:
    if settings.redis_url:
        LOGGER.info("Using Redis shared cache tier")
        return RedisCacheBackend(settings.redis_url)
    LOGGER.info("REDIS_URL not set; using in-process shared cache tier")
    return InMemoryCacheBackend()


def build_runtime(settings: Settings, db: Database, shared: CacheBackend) -> tuple[AgentRuntime, MessageRecorder]:
    """Wire the calendar, cache, tools and model provider into a runtime."""

    tz = user_zone(settings)
    cache = EventCache(
        shared,
        tz,
        ttl_seconds=settings.cache_ttl_seconds,
        local_ttl_seconds=settings.local_cache_ttl_seconds,
    )
    backend = GoogleCalendarBackend(
        base_url=settings.google_calendar_base_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    engine = AvailabilityEngine(cache, backend, working_hours=working_hours(settings), tz=tz)
    kit = CalendarToolkit(backend, cache, engine, db=db)

    tools = ToolRegistry(db, deadline_seconds=settings.tool_call_deadline_seconds)
    for tool in calendar_tools(kit):
        tools.register(tool)
    tools.register(SavePreferenceTool(db))
    tools.register(WeatherTool(tz, timeout_seconds=settings.request_timeout_seconds))

    recorder = MessageRecorder(db)
    runtime = AgentRuntime(
        db=db,
        llm=OpenRouterProvider(settings),
        tool_registry=tools,
        recorder=recorder,
        max_tool_iterations=settings.max_tool_iterations,
        history_window_messages=settings.history_window_messages,
        model_call_deadline_seconds=settings.model_call_deadline_seconds,
        command_dispatcher=CommandDispatcher(kit),
        tz=tz,
    )
    return runtime, recorder


def _print_event(event: TurnEvent) -> None:
    if event.type == "processing":
        print(f"… {event.content}", flush=True)
    elif event.type == "error":
        print(f"! {event.content}", file=sys.stderr, flush=True)


async def run() -> None:
    """Initialize app layers and read user messages until EOF."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()
    shared = build_cache_backend(settings)
    runtime, recorder = build_runtime(settings, db, shared)

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            result = await runtime.chat(
                settings.user_id,
                line,
                access_token=settings.google_access_token,
                on_event=_print_event,
            )
            print(result.text, flush=True)
    except asyncio.CancelledError:
        raise
    finally:
        await recorder.close()
        await shared.close()
        LOGGER.info("Assistant shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
