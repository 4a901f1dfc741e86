"""Unit tests for cache/store.py -- CI read-through cache backends.

Covers:
- CICache (SQLite): set/get/delete, TTL expiry on read, purge_expired()
- RedisCICache: key naming, TTL passed as ex=, JSON round trip (client mocked)
- build_cache(): Redis when REDIS_URL is set, SQLite otherwise
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import cache.store as cache_module
from cache.store import CICache, RedisCICache, build_cache, cache_key


@pytest.fixture
def clock(monkeypatch):
    """Controllable wall clock for TTL tests."""
    now = [1_000_000.0]
    monkeypatch.setattr(cache_module, "time", SimpleNamespace(time=lambda: now[0]))
    return now


@pytest.fixture
def cache():
    c = CICache(":memory:", ttl=300)
    yield c
    c.close()


class TestSQLiteCache:
    def test_set_then_get(self, cache):
        cache.set("abc", {"name": "web-1", "tags": ["prod"]})
        assert cache.get("abc") == {"name": "web-1", "tags": ["prod"]}

    def test_miss_returns_none(self, cache):
        assert cache.get("missing") is None

    def test_delete(self, cache):
        cache.set("abc", {"name": "web-1"})
        cache.delete("abc")
        assert cache.get("abc") is None

    def test_entry_expires_after_ttl(self, cache, clock):
        """Entries are served for ttl seconds and never refreshed by reads."""
        cache.set("abc", {"name": "web-1"})
        clock[0] += 299
        assert cache.get("abc") is not None
        clock[0] += 2
        assert cache.get("abc") is None

    def test_purge_expired(self, cache, clock):
        cache.set("old", {"n": 1})
        clock[0] += 200
        cache.set("new", {"n": 2})
        clock[0] += 200
        assert cache.purge_expired() == 1
        assert cache.get("new") == {"n": 2}


class TestRedisCache:
    def test_set_uses_ttl(self):
        client = MagicMock()
        RedisCICache(client, ttl=120).set("abc", {"name": "web-1"})
        client.set.assert_called_once_with(cache_key("abc"), json.dumps({"name": "web-1"}), ex=120)

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = '{"name": "web-1"}'
        assert RedisCICache(client).get("abc") == {"name": "web-1"}
        client.get.assert_called_once_with("ci:abc")

    def test_get_miss(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisCICache(client).get("abc") is None

    def test_delete_and_purge(self):
        client = MagicMock()
        cache = RedisCICache(client)
        cache.delete("abc")
        client.delete.assert_called_once_with("ci:abc")
        assert cache.purge_expired() == 0, "Redis expires keys itself"


class TestBuildCache:
    def _settings(self, **overrides):
        values = {
            "redis_url": "",
            "cache_db_path": ":memory:",
            "ci_cache_ttl_seconds": 60,
            "store_timeout_seconds": 3.0,
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_sqlite_by_default(self):
        cache = build_cache(self._settings())
        assert isinstance(cache, CICache)
        assert cache.ttl == 60
        cache.close()

    def test_redis_when_url_set(self):
        with patch("cache.store.redis.Redis.from_url") as from_url:
            cache = build_cache(self._settings(redis_url="redis://cache:6379/0"))
        assert isinstance(cache, RedisCICache)
        from_url.assert_called_once_with(
            "redis://cache:6379/0",
            decode_responses=True,
            socket_timeout=3.0,
            socket_connect_timeout=3.0,
        )
