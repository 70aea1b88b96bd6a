"""
Cache stores for catalog service lookups and author ids.

Two implementations share one interface: an in-memory store for tests and
single-process use, and a SQLite store backed by the ``catalog_cache`` and
``catalog_authors`` tables. Both are safe to share between concurrent
approval attempts; writes are last-write-wins.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

LOOKUP_TTL = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(UTC)


def author_key(name: str) -> str:
    return (name or "").strip().lower()


class CacheStore(ABC):
    """Key/value cache with expiry plus an author name to id map."""

    @abstractmethod
    def get(self, key: str, kind: str) -> str | None:
        """Return cached data, or None when missing or expired."""

    @abstractmethod
    def set(self, key: str, kind: str, data: str, ttl: timedelta | None = None) -> None:
        """Store data; a ttl of None never expires."""

    @abstractmethod
    def get_author(self, name: str) -> int | None:
        """Return the cached author id for an exact (case-insensitive) name."""

    @abstractmethod
    def set_author(self, name: str, author_id: int) -> None:
        pass

    @abstractmethod
    def invalidate_author(self, name: str) -> None:
        pass

    @abstractmethod
    def clear_authors(self) -> int:
        """Forget every cached author id, returning how many were dropped."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries, returning how many were removed."""


class MemoryCacheStore(CacheStore):
    """Process-local cache guarded by a lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str, str, datetime | None]] = {}
        self._authors: dict[str, int] = {}

    def get(self, key: str, kind: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry_kind, data, expires_at = entry
            if entry_kind != kind:
                return None
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return data

    def set(self, key: str, kind: str, data: str, ttl: timedelta | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._entries[key] = (kind, data, expires_at)

    def get_author(self, name: str) -> int | None:
        with self._lock:
            return self._authors.get(author_key(name))

    def set_author(self, name: str, author_id: int) -> None:
        key = author_key(name)
        if not key or author_id <= 0:
            return
        with self._lock:
            self._authors[key] = author_id

    def invalidate_author(self, name: str) -> None:
        with self._lock:
            self._authors.pop(author_key(name), None)

    def clear_authors(self) -> int:
        with self._lock:
            count = len(self._authors)
            self._authors.clear()
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, (_, _, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)


class SqliteCacheStore(CacheStore):
    """Cache persisted in the request database."""

    def __init__(self, db_path: Path, clock: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str, kind: str) -> str | None:
        now = self._clock().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT data FROM catalog_cache
                WHERE cache_key = ? AND cache_type = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (key, kind, now),
            )
            row = cursor.fetchone()
            return row["data"] if row else None
        finally:
            conn.close()

    def set(self, key: str, kind: str, data: str, ttl: timedelta | None = None) -> None:
        now = self._clock()
        expires_at = (now + ttl).isoformat() if ttl else None
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO catalog_cache
                    (cache_key, cache_type, data, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key, kind, data, now.isoformat(), expires_at),
            )
            conn.commit()
        finally:
            conn.close()

    def get_author(self, name: str) -> int | None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT author_id FROM catalog_authors WHERE name = ?",
                (author_key(name),),
            )
            row = cursor.fetchone()
            return row["author_id"] if row else None
        finally:
            conn.close()

    def set_author(self, name: str, author_id: int) -> None:
        key = author_key(name)
        if not key or author_id <= 0:
            return
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO catalog_authors (name, author_id, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, author_id, self._clock().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def invalidate_author(self, name: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM catalog_authors WHERE name = ?", (author_key(name),))
            conn.commit()
        finally:
            conn.close()

    def clear_authors(self) -> int:
        conn = self._connect()
        try:
            removed = conn.execute("DELETE FROM catalog_authors").rowcount
            conn.commit()
        finally:
            conn.close()
        return removed

    def purge_expired(self) -> int:
        now = self._clock().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM catalog_cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            conn.commit()
            removed = cursor.rowcount
        finally:
            conn.close()

        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed
