from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from conftest import timed_event
from calendar_assistant.cache.backends import InMemoryCacheBackend
from calendar_assistant.cache.events import EventCache, _LocalTier, index_key, parse_range_key, range_key
from calendar_assistant.errors import CacheError

UTC = timezone.utc


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=UTC)


class CountingCacheBackend(InMemoryCacheBackend):
    def __init__(self, clock) -> None:  # noqa: ANN001
        super().__init__(clock=clock)
        self.reads = 0

    async def get(self, key: str) -> str | None:
        self.reads += 1
        return await super().get(key)


class BrokenCacheBackend(InMemoryCacheBackend):
    async def get(self, key: str) -> str | None:
        raise CacheError("connection refused")

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        raise CacheError("connection refused")

    async def smembers(self, set_key: str) -> set[str]:
        raise CacheError("connection refused")


def test_key_format():
    key = range_key("user-1", date(2026, 10, 20), date(2026, 10, 22))

    assert key == "user:user-1:date_range:2026-10-20_2026-10-22"
    assert index_key("user-1") == "user:user-1:date_range:all_ranges"
    assert parse_range_key(key) == (date(2026, 10, 20), date(2026, 10, 22))
    assert parse_range_key(index_key("user-1")) is None


@pytest.mark.asyncio
async def test_queries_within_same_day_share_one_fetch(cache, backend, ctx):
    backend.add(timed_event("a", "Standup", "2026-10-20T09:00:00+00:00", "2026-10-20T09:30:00+00:00"))
    backend.add(timed_event("b", "Review", "2026-10-20T15:00:00+00:00", "2026-10-20T16:00:00+00:00"))

    morning = await cache.get_events(ctx, _at(20, 8), _at(20, 12), backend)
    afternoon = await cache.get_events(ctx, _at(20, 14), _at(20, 17), backend)

    assert [e["id"] for e in morning] == ["a"]
    assert [e["id"] for e in afternoon] == ["b"]
    assert backend.list_calls == [(_at(20, 0), _at(21, 0))]


@pytest.mark.asyncio
async def test_results_are_filtered_to_half_open_window(cache, backend, ctx):
    backend.add(timed_event("a", "Ends at ten", "2026-10-20T09:00:00+00:00", "2026-10-20T10:00:00+00:00"))

    events = await cache.get_events(ctx, _at(20, 10), _at(20, 11), backend)

    assert events == []


@pytest.mark.asyncio
async def test_local_tier_expires_before_shared_tier(clock, backend, ctx):
    shared = CountingCacheBackend(clock)
    cache = EventCache(shared, UTC, ttl_seconds=300, local_ttl_seconds=10, clock=clock)

    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    reads_after_miss = shared.reads
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    assert shared.reads == reads_after_miss

    clock.advance(11)
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    assert shared.reads == reads_after_miss + 1
    assert len(backend.list_calls) == 1

    clock.advance(300)
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    assert len(backend.list_calls) == 2


@pytest.mark.asyncio
async def test_invalidation_drops_overlapping_ranges_only(cache, backend, ctx):
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    await cache.get_events(ctx, _at(22, 9), _at(22, 10), backend)

    removed = await cache.invalidate("user-1", _at(20, 13), _at(20, 14))

    assert removed == 1
    await cache.get_events(ctx, _at(22, 9), _at(22, 10), backend)
    assert len(backend.list_calls) == 2
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    assert len(backend.list_calls) == 3


@pytest.mark.asyncio
async def test_invalidation_is_idempotent(cache, shared, backend, ctx):
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)
    await cache.get_events(ctx, _at(22, 9), _at(22, 10), backend)

    first = await cache.invalidate("user-1", _at(20, 9), _at(20, 10))
    state_once = await shared.smembers(index_key("user-1"))
    second = await cache.invalidate("user-1", _at(20, 9), _at(20, 10))
    state_twice = await shared.smembers(index_key("user-1"))

    assert first == 1
    assert second == 0
    assert state_once == state_twice == {range_key("user-1", date(2026, 10, 22), date(2026, 10, 22))}


@pytest.mark.asyncio
async def test_multi_day_entry_is_dropped_by_inner_day(cache, backend, ctx):
    await cache.get_events(ctx, _at(19, 0), _at(23, 0), backend)

    removed = await cache.invalidate("user-1", _at(21, 9), _at(21, 10))

    assert removed == 1


@pytest.mark.asyncio
async def test_invalidation_is_scoped_per_user(cache, backend, ctx):
    await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)

    assert await cache.invalidate("someone-else", _at(20, 9), _at(20, 10)) == 0
    assert await cache.invalidate_user("user-1") == 1


@pytest.mark.asyncio
async def test_shared_tier_failure_degrades_to_backend_fetch(clock, backend, ctx):
    backend.add(timed_event("a", "Standup", "2026-10-20T09:00:00+00:00", "2026-10-20T09:30:00+00:00"))
    cache = EventCache(BrokenCacheBackend(clock=clock), UTC, clock=clock)

    events = await cache.get_events(ctx, _at(20, 9), _at(20, 10), backend)

    assert [e["id"] for e in events] == ["a"]
    # The local tier still serves the entry, and invalidation still reaches it.
    assert await cache.invalidate("user-1", _at(20, 9), _at(20, 10)) == 1


@pytest.mark.asyncio
async def test_in_memory_backend_prunes_expired_entries_on_write(clock):
    shared = InMemoryCacheBackend(clock=clock)
    await shared.set("old", "[]", 10)
    await shared.sadd("index", "old")

    clock.advance(11)
    await shared.set("new", "[]", 10)
    await shared.sadd("index", "new")

    assert "old" not in shared._values
    assert await shared.smembers("index") == {"new"}


def test_local_tier_prunes_expired_entries_on_write(clock):
    local = _LocalTier(10, clock)
    local.put("user:u:date_range:2026-10-20_2026-10-20", [])

    clock.advance(11)
    local.put("user:u:date_range:2026-10-21_2026-10-21", [])

    assert local.keys_with_prefix("user:u:") == {"user:u:date_range:2026-10-21_2026-10-21"}
