"""
cache/store.py -- Read-through cache for individual configuration items.

Entries are keyed "ci:<id>" and hold the CI serialised as JSON. They live for
a fixed TTL (default 5 minutes) and are never refreshed early: writers delete
the key, readers repopulate it on the next miss. Entries carry no version, so
a slow writer racing a fast reader can leave a stale copy until the TTL runs
out. That window is accepted.

Two interchangeable backends:
  CICache       -- SQLite file, one process or several on the same host
  RedisCICache  -- Redis, shared across hosts; Redis expires keys itself

build_cache(settings) picks Redis when REDIS_URL is set.

Usage:
    cache = CICache()
    data = cache.get(ci_id)      # returns dict or None
    cache.set(ci_id, data)
    cache.delete(ci_id)          # on every write to the CI
    cache.purge_expired()        # call periodically to trim old entries
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

import redis

if TYPE_CHECKING:
    from core.config import Settings

_DEFAULT_DB = Path(__file__).parent / "lattice_cache.db"
_DEFAULT_TTL = 5 * 60  # seconds

logger = logging.getLogger("lattice.cache")

_DDL = """
CREATE TABLE IF NOT EXISTS ci_cache (
    key         TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    cached_at   REAL NOT NULL
);
"""


def cache_key(ci_id: str) -> str:
    return f"ci:{ci_id}"


class Cache(Protocol):
    ttl: int

    def get(self, ci_id: str) -> Optional[dict]: ...

    def set(self, ci_id: str, data: dict) -> None: ...

    def delete(self, ci_id: str) -> None: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...


class CICache:
    def __init__(self, db_path: Path | str = _DEFAULT_DB, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        # One connection shared by request threads; _lock serialises use of it.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, ci_id: str) -> Optional[dict]:
        """Return cached data for ci_id if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, cached_at FROM ci_cache WHERE key = ?",
                (cache_key(ci_id),),
            ).fetchone()
        if row is None:
            return None
        data, cached_at = row
        if time.time() - cached_at > self.ttl:
            self.delete(ci_id)
            return None
        return json.loads(data)

    def set(self, ci_id: str, data: dict) -> None:
        """Store data for ci_id, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO ci_cache (key, data, cached_at) VALUES (?, ?, ?)",
                (cache_key(ci_id), json.dumps(data), time.time()),
            )
            self._conn.commit()

    def delete(self, ci_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM ci_cache WHERE key = ?", (cache_key(ci_id),))
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of rows removed."""
        cutoff = time.time() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM ci_cache WHERE cached_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


class RedisCICache:
    """Same contract as CICache on top of a redis-py client.

    The client is injectable so tests can pass a MagicMock.
    """

    def __init__(self, client: redis.Redis, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._client = client

    @classmethod
    def from_url(cls, url: str, ttl: int = _DEFAULT_TTL, timeout: float = 5.0) -> "RedisCICache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, ttl=ttl)

    def get(self, ci_id: str) -> Optional[dict]:
        raw = self._client.get(cache_key(ci_id))
        return json.loads(raw) if raw is not None else None

    def set(self, ci_id: str, data: dict) -> None:
        self._client.set(cache_key(ci_id), json.dumps(data), ex=self.ttl)

    def delete(self, ci_id: str) -> None:
        self._client.delete(cache_key(ci_id))

    def purge_expired(self) -> int:
        """Redis evicts expired keys on its own; nothing to do."""
        return 0

    def close(self) -> None:
        self._client.close()


def build_cache(settings: "Settings") -> Cache:
    """Return the cache backend selected by settings."""
    if settings.redis_url:
        logger.info("CI cache: Redis (ttl=%ds)", settings.ci_cache_ttl_seconds)
        return RedisCICache.from_url(
            settings.redis_url,
            ttl=settings.ci_cache_ttl_seconds,
            timeout=settings.store_timeout_seconds,
        )
    db_path = settings.cache_db_path or _DEFAULT_DB
    logger.info("CI cache: SQLite %s (ttl=%ds)", db_path, settings.ci_cache_ttl_seconds)
    return CICache(db_path, ttl=settings.ci_cache_ttl_seconds)
