"""
Content-addressable response cache for exchangelog.

CacheStore is a HistoryStore with a second table, ``response_cache``,
keyed by the SHA-256 of a response body. Identical bodies share one row.
A history entry refers to a cached body by storing the hash in its
``response_body`` field; prune_cache() deletes every row no history entry
refers to any more.

Tables:
    - response_cache: hash -> body, size, created_at, access_count,
      last_accessed

Hit and miss counters are kept in memory for the lifetime of the store.
They have their own lock, so lookups can update them while holding only
a shared hold on the tables.
"""

import hashlib
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any

from exchangelog.errors import (
    DuplicateIDError,
    NotFoundError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from exchangelog.schema import CacheEntry, CacheStats, Entry
from exchangelog.store.db import (
    INSERT_HISTORY_SQL,
    HistoryStore,
    entry_values,
    generate_id,
    now_iso,
)
from exchangelog.store.query import from_db_time

logger = logging.getLogger(__name__)

CREATE_CACHE_SQL = """
-- Response cache: one row per distinct response body
CREATE TABLE IF NOT EXISTS response_cache (
    hash TEXT PRIMARY KEY,
    body TEXT NOT NULL,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 1,
    last_accessed TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_created ON response_cache(created_at);
CREATE INDEX IF NOT EXISTS idx_cache_accessed ON response_cache(last_accessed);
"""

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def content_hash(body: str) -> str:
    """SHA-256 of a response body, hex encoded."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def looks_like_hash(value: str) -> bool:
    """True if value has the shape of a content_hash() result."""
    return bool(_HASH_RE.match(value))


class CacheStore(HistoryStore):
    """
    HistoryStore plus a deduplicating response-body cache.

    Usage:
        with CacheStore.in_memory() as store:
            digest = store.cache_response(body)
            store.add(Entry(..., response_body=digest))
            body = store.get_cached_response(digest)
    """

    def __init__(self, db_path: str | Path, **kwargs: Any) -> None:
        self._counter_lock = threading.Lock()
        self._hit_count = 0
        self._miss_count = 0
        super().__init__(db_path, **kwargs)

    def _init_schema(self) -> None:
        """Create the history tables, then the cache table."""
        super()._init_schema()
        try:
            cursor = self._conn.executescript(CREATE_CACHE_SQL)
            cursor.close()
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="init_cache_schema",
                message=f"Failed to initialize cache: {e}",
            ) from e

    # =========================================================================
    # Cache Operations
    # =========================================================================

    def cache_response(self, body: str) -> str:
        """
        Store a response body and return its hash.

        Caching a body that is already present only bumps its access count,
        so the same content never occupies more than one row.
        """
        with self._lock.write_lock():
            self._check_open("cache_response")
            digest = content_hash(body)
            try:
                with self.transaction():
                    self._upsert_body(digest, body)
            except sqlite3.Error as e:
                raise StorageWriteError(operation="cache_response", underlying_error=str(e)) from e
            return digest

    def _upsert_body(self, digest: str, body: str) -> None:
        now = now_iso()
        cursor = self._conn.execute(
            """
            UPDATE response_cache
            SET access_count = access_count + 1, last_accessed = ?
            WHERE hash = ?
            """,
            (now, digest),
        )
        if cursor.rowcount == 0:
            self._conn.execute(
                """
                INSERT INTO response_cache (
                    hash, body, size, created_at, access_count, last_accessed
                ) VALUES (?, ?, ?, ?, 1, ?)
                """,
                (digest, body, len(body.encode("utf-8")), now, now),
            )

    def get_cached_response(self, cache_hash: str) -> str:
        """
        Get a cached body by hash.

        Every call counts as a hit or a miss, including calls that raise.

        Raises:
            NotFoundError: If no body with that hash is cached
        """
        with self._lock.read_lock():
            self._check_open("get_cached_response")
            # The counter lock also serializes the access-count update,
            # which is the one write issued under a shared hold.
            with self._counter_lock:
                try:
                    with self.transaction():
                        row = self._conn.execute(
                            "SELECT body FROM response_cache WHERE hash = ?",
                            (cache_hash,),
                        ).fetchone()
                        if row is not None:
                            self._conn.execute(
                                """
                                UPDATE response_cache
                                SET access_count = access_count + 1, last_accessed = ?
                                WHERE hash = ?
                                """,
                                (now_iso(), cache_hash),
                            )
                except sqlite3.Error as e:
                    raise StorageReadError(
                        operation="get_cached_response",
                        underlying_error=str(e),
                    ) from e

                if row is None:
                    self._miss_count += 1
                    raise NotFoundError(
                        operation="get_cached_response",
                        key=cache_hash,
                        message=f"Cached response not found: {cache_hash}",
                    )
                self._hit_count += 1
                return row["body"]

    def cache_info(self, cache_hash: str) -> CacheEntry:
        """
        Metadata for one cached body. Does not count as a hit or miss.

        Raises:
            NotFoundError: If no body with that hash is cached
        """
        with self._lock.read_lock():
            self._check_open("cache_info")
            try:
                row = self._conn.execute(
                    """
                    SELECT hash, size, created_at, access_count, last_accessed
                    FROM response_cache WHERE hash = ?
                    """,
                    (cache_hash,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageReadError(operation="cache_info", underlying_error=str(e)) from e
            if row is None:
                raise NotFoundError(
                    operation="cache_info",
                    key=cache_hash,
                    message=f"Cached response not found: {cache_hash}",
                )
            return CacheEntry(
                hash=row["hash"],
                size=row["size"],
                created_at=from_db_time(row["created_at"]),
                access_count=row["access_count"],
                last_accessed=from_db_time(row["last_accessed"]),
            )

    def prune_cache(self) -> int:
        """
        Delete cached bodies that no history entry refers to.

        Returns:
            Number of cache rows deleted
        """
        with self._lock.write_lock():
            self._check_open("prune_cache")
            try:
                with self.transaction():
                    cursor = self._conn.execute(
                        """
                        DELETE FROM response_cache
                        WHERE hash NOT IN (
                            SELECT DISTINCT response_body FROM history
                            WHERE response_body IS NOT NULL AND response_body != ''
                        )
                        """
                    )
            except sqlite3.Error as e:
                raise StorageWriteError(operation="prune_cache", underlying_error=str(e)) from e
            logger.info("pruned %d unreferenced cached responses", cursor.rowcount)
            return cursor.rowcount

    def cache_stats(self) -> CacheStats:
        """Row count and size of the cache plus cumulative hit/miss counters."""
        with self._lock.read_lock():
            self._check_open("cache_stats")
            try:
                row = self._conn.execute(
                    "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM response_cache"
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageReadError(operation="cache_stats", underlying_error=str(e)) from e

            with self._counter_lock:
                hits, misses = self._hit_count, self._miss_count

            lookups = hits + misses
            return CacheStats(
                total_entries=row[0],
                total_size=row[1],
                hit_count=hits,
                miss_count=misses,
                hit_rate=hits / lookups if lookups else 0.0,
            )

    def clear_cache(self) -> None:
        """Delete every cached body and reset the hit/miss counters."""
        with self._lock.write_lock():
            self._check_open("clear_cache")
            try:
                with self.transaction():
                    cursor = self._conn.execute("DELETE FROM response_cache")
            except sqlite3.Error as e:
                raise StorageWriteError(operation="clear_cache", underlying_error=str(e)) from e
            with self._counter_lock:
                self._hit_count = 0
                self._miss_count = 0
            logger.info("cleared %d cached responses", cursor.rowcount)

    # =========================================================================
    # History Integration
    # =========================================================================

    def add_with_cached_body(self, entry: Entry) -> str:
        """
        Cache the entry's response body and record the entry pointing at it.

        The body is replaced by its hash in the stored copy; when
        ``response_size`` is 0 it is set to the body's UTF-8 length. Both
        writes commit together or not at all. An empty body is stored as is.

        Returns:
            The ID of the stored entry

        Raises:
            DuplicateIDError: If an explicit ID is already stored
        """
        with self._lock.write_lock():
            self._check_open("add_with_cached_body")
            entry_id = entry.id or generate_id()
            body = entry.response_body
            stored = entry
            try:
                with self.transaction():
                    if body:
                        digest = content_hash(body)
                        self._upsert_body(digest, body)
                        update: dict[str, Any] = {"response_body": digest}
                        if entry.response_size == 0:
                            update["response_size"] = len(body.encode("utf-8"))
                        stored = entry.model_copy(update=update)
                    self._conn.execute(INSERT_HISTORY_SQL, entry_values(stored, entry_id))
            except sqlite3.IntegrityError as e:
                raise DuplicateIDError(
                    operation="add_with_cached_body",
                    entry_id=entry_id,
                    underlying_error=str(e),
                ) from e
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="add_with_cached_body",
                    underlying_error=str(e),
                ) from e
            return entry_id

    def resolve_response_body(self, entry: Entry) -> str:
        """
        The response body an entry stands for.

        Returns the cached body when ``entry.response_body`` is the hash of
        a cached row, otherwise ``entry.response_body`` itself. Does not
        count as a cache hit or miss.
        """
        with self._lock.read_lock():
            self._check_open("resolve_response_body")
            value = entry.response_body
            if not looks_like_hash(value):
                return value
            try:
                row = self._conn.execute(
                    "SELECT body FROM response_cache WHERE hash = ?",
                    (value,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageReadError(
                    operation="resolve_response_body",
                    underlying_error=str(e),
                ) from e
            return row["body"] if row is not None else value
