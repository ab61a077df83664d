"""
Tests for the visitor stores.

The Redis store runs against an in-process fake of the async client.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fingerprinting.core.models.config import StoreConfig
from fingerprinting.core.stores.redis_store import RedisVisitorStore
from fingerprinting.core.stores.visitor_store import InMemoryVisitorStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class MockAsyncRedis:
    """Just enough of redis.asyncio.Redis for the visitor store."""

    def __init__(self):
        self.data = {}
        self.zsets = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value
        return True

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _ordered(self, key, reverse):
        members = self.zsets.get(key, {})
        return [member for member, _ in sorted(members.items(), key=lambda item: item[1], reverse=reverse)]

    @staticmethod
    def _slice(items, start, stop):
        return items[start:] if stop == -1 else items[start:stop + 1]

    async def zrange(self, key, start, stop):
        return self._slice(self._ordered(key, False), start, stop)

    async def zrevrange(self, key, start, stop):
        return self._slice(self._ordered(key, True), start, stop)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


def _fields(minutes_ago, visit_count=1, browser="Chrome"):
    seen = NOW - timedelta(minutes=minutes_ago)
    return {
        "first_visit": seen,
        "last_visit": seen,
        "visit_count": visit_count,
        "browser": browser,
    }


def _stores():
    return [
        InMemoryVisitorStore(),
        RedisVisitorStore(StoreConfig(backend="redis"), client=MockAsyncRedis()),
    ]


@pytest.mark.parametrize("store", _stores(), ids=["memory", "redis"])
def test_upsert_and_find(store):
    """Upserts create documents with defaults and merge later fields."""
    async def run():
        created = await store.upsert_visitor("v1", _fields(10))
        assert created.visit_count == 1
        assert created.country == "Unknown"
        assert created.country_code == "XX"
        assert created.screen_resolution == "1920x1080"
        assert created.preferences.theme == "light"

        updated = await store.upsert_visitor("v1", {"visit_count": 2, "country": "Germany", "browser": None})
        assert updated.visit_count == 2
        assert updated.country == "Germany"
        assert updated.browser == "Chrome"

        found = await store.find_by_visitor_id("v1")
        assert found == updated
        assert await store.find_by_visitor_id("missing") is None

    asyncio.run(run())


@pytest.mark.parametrize("store", _stores(), ids=["memory", "redis"])
def test_list_recent_and_count(store):
    """Recent listing orders by last visit and honors the limit."""
    async def run():
        await store.upsert_visitor("old", _fields(120))
        await store.upsert_visitor("new", _fields(1, visit_count=3))
        await store.upsert_visitor("mid", _fields(30, browser="Firefox"))

        recent = await store.list_recent_visitors(2)
        assert [record.visitor_id for record in recent] == ["new", "mid"]

        oldest_first = await store.list_recent_visitors(10, sort_by_last_visit_desc=False)
        assert [record.visitor_id for record in oldest_first] == ["old", "mid", "new"]

        assert await store.count_by_predicate(lambda record: record.visit_count > 1) == 1
        assert await store.count_by_predicate(lambda record: record.browser == "Chrome") == 2
        assert await store.health_check()

    asyncio.run(run())


def test_redis_layout_and_close():
    """Documents live under the prefix and the index scores by last visit."""
    client = MockAsyncRedis()
    store = RedisVisitorStore(StoreConfig(key_prefix="visitor"), client=client)

    async def run():
        record = await store.upsert_visitor("v1", _fields(5))
        await store.close()
        return record

    record = asyncio.run(run())

    assert "visitor:v1" in client.data
    assert client.zsets["visitor:by_last_visit"]["v1"] == int(record.last_visit.timestamp() * 1000)
    assert client.closed


def test_redis_skips_dangling_index_entries():
    """Index members without a document are ignored."""
    client = MockAsyncRedis()
    store = RedisVisitorStore(StoreConfig(), client=client)
    client.zsets[store.index_key] = {"ghost": 1}

    assert asyncio.run(store.list_recent_visitors(10)) == []
