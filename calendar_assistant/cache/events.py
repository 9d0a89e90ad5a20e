"""Read-through cache of calendar events keyed by user and day range.

Two tiers sit in front of the calendar backend: a short-lived in-process
tier and a shared tier (Redis or in-memory). Entries are keyed by whole
days in the user's timezone, so a query for 14:00-15:00 and one for the
whole day share an entry; exact-time filtering happens after retrieval.

Writes never patch cached payloads. Handlers that change the calendar call
``invalidate`` with the affected interval, which drops every cached range
whose days overlap it.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import date, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Any, Callable

from calendar_assistant.cache.backends import CacheBackend
from calendar_assistant.errors import CacheError
from calendar_assistant.models import RequestContext
from calendar_assistant.scheduling.events import day_start, overlaps_window

if TYPE_CHECKING:
    from calendar_assistant.gcal.base import CalendarBackend

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_LOCAL_TTL_SECONDS = 10.0

_RANGE_KEY_RE = re.compile(r":date_range:(\d{4}-\d{2}-\d{2})_(\d{4}-\d{2}-\d{2})$")


def range_prefix(user_id: str) -> str:
    return f"user:{user_id}:date_range:"


def range_key(user_id: str, first: date, last: date) -> str:
    return f"{range_prefix(user_id)}{first.isoformat()}_{last.isoformat()}"


def index_key(user_id: str) -> str:
    return f"{range_prefix(user_id)}all_ranges"


def parse_range_key(key: str) -> tuple[date, date] | None:
    match = _RANGE_KEY_RE.search(key)
    if match is None:
        return None
    return date.fromisoformat(match.group(1)), date.fromisoformat(match.group(2))


class _LocalTier:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float]) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[dict[str, Any]]]] = {}

    def get(self, key: str) -> list[dict[str, Any]] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, events = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return events

    def put(self, key: str, events: list[dict[str, Any]]) -> None:
        now = self._clock()
        for stale in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[stale]
        self._entries[key] = (now + self._ttl_seconds, events)

    def keys_with_prefix(self, prefix: str) -> set[str]:
        return {key for key in self._entries if key.startswith(prefix)}

    def drop(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)


class EventCache:
    """Two-tier read-through cache for calendar event listings."""

    def __init__(
        self,
        shared: CacheBackend,
        tz: tzinfo,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        local_ttl_seconds: float = DEFAULT_LOCAL_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._shared = shared
        self._tz = tz
        self._ttl_seconds = ttl_seconds
        self._local = _LocalTier(local_ttl_seconds, clock)

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    def day_range(self, start: datetime, end: datetime) -> tuple[date, date]:
        first = start.astimezone(self._tz).date()
        last = end.astimezone(self._tz).date()
        return min(first, last), max(first, last)

    async def get_events(
        self,
        ctx: RequestContext,
        start: datetime,
        end: datetime,
        backend: CalendarBackend,
    ) -> list[dict[str, Any]]:
        """Return events overlapping [start, end), fetching whole days on a miss."""

        first, last = self.day_range(start, end)
        key = range_key(ctx.user_id, first, last)
        events = await self._lookup(key)
        if events is None:
            LOGGER.info("Cache MISS for %s", key)
            events = await backend.list_events(
                ctx, day_start(first, self._tz), day_start(last + timedelta(days=1), self._tz)
            )
            await self._store(ctx.user_id, key, events)
        else:
            LOGGER.info("Cache HIT for %s (%d events)", key, len(events))
        return [event for event in events if overlaps_window(event, start, end, self._tz)]

    async def _lookup(self, key: str) -> list[dict[str, Any]] | None:
        events = self._local.get(key)
        if events is not None:
            return events
        try:
            raw = await self._shared.get(key)
        except CacheError as exc:
            LOGGER.warning("Shared cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            events = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Discarding undecodable cache entry %s", key)
            return None
        if not isinstance(events, list):
            return None
        self._local.put(key, events)
        return events

    async def _store(self, user_id: str, key: str, events: list[dict[str, Any]]) -> None:
        self._local.put(key, events)
        try:
            await self._shared.set(key, json.dumps(events), self._ttl_seconds)
            await self._shared.sadd(index_key(user_id), key)
        except CacheError as exc:
            LOGGER.warning("Shared cache write failed for %s: %s", key, exc)

    async def invalidate(self, user_id: str, start: datetime, end: datetime) -> int:
        """Drop every cached range overlapping the days of [start, end].

        Idempotent and order-insensitive; returns the number of ranges removed.
        """
        first, last = self.day_range(start, end)
        return await self._drop_matching(user_id, lambda f, l: f <= last and l >= first)

    async def invalidate_user(self, user_id: str) -> int:
        return await self._drop_matching(user_id, lambda f, l: True)

    async def _drop_matching(self, user_id: str, predicate: Callable[[date, date], bool]) -> int:
        index = index_key(user_id)
        try:
            known = await self._shared.smembers(index)
        except CacheError as exc:
            LOGGER.warning("Shared cache index read failed for %s: %s", user_id, exc)
            known = set()
        known |= self._local.keys_with_prefix(range_prefix(user_id))

        stale = []
        for key in known:
            bounds = parse_range_key(key)
            if bounds is not None and predicate(*bounds):
                stale.append(key)
        if not stale:
            return 0

        self._local.drop(*stale)
        try:
            await self._shared.delete(*stale)
            await self._shared.srem(index, *stale)
        except CacheError as exc:
            LOGGER.error("Shared cache invalidation failed for %s: %s", user_id, exc)
        LOGGER.info("Invalidated %d cached range(s) for user %s", len(stale), user_id)
        return len(stale)
