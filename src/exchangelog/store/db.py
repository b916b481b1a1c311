"""
SQLite storage for exchangelog.

This module provides the persistence and query engine for recorded HTTP
exchanges. Every entry is one row in the ``history`` table; header maps,
tags and metadata are stored as JSON text.

Design Principles:
    - Atomic: Every mutation runs in a transaction, rolled back on error
    - Parameterized: Caller values are always bound, never spliced
    - Fail loudly: Zero-row update/delete raise NotFoundError
    - Closed is final: After close() every call raises StoreClosedError

Tables:
    - schema_version: Applied schema version
    - history: One row per recorded exchange

Concurrency:
    One connection per store, shared across threads. A readers/writer
    lock lets queries run together while all mutations run alone.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from pydantic import ValidationError

from exchangelog.errors import (
    DuplicateIDError,
    InvalidIDError,
    NotFoundError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
    StoreClosedError,
)
from exchangelog.schema import (
    Entry,
    PruneByAge,
    PruneByCount,
    PruneByDate,
    PruneBySize,
    PruneOptions,
    PruneResult,
    QueryOptions,
    Stats,
    StoreConfig,
)
from exchangelog.store.locking import RWLock
from exchangelog.store.query import (
    HISTORY_COLUMNS,
    Predicates,
    build_delete_query,
    build_list_query,
    build_search_query,
    from_db_time,
    scope_predicates,
    to_db_time,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

MEMORY_PATH = ":memory:"

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- History table: one row per recorded exchange
CREATE TABLE IF NOT EXISTS history (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    request_method TEXT NOT NULL,
    request_url TEXT NOT NULL,
    request_headers TEXT,
    request_body TEXT,
    response_status INTEGER NOT NULL,
    response_status_text TEXT,
    response_headers TEXT,
    response_body TEXT,
    response_time INTEGER,
    response_size INTEGER,
    collection_id TEXT,
    collection_name TEXT,
    request_id TEXT,
    request_name TEXT,
    environment TEXT,
    tags TEXT,
    notes TEXT,
    metadata TEXT,
    tests_passed INTEGER DEFAULT 0,
    tests_failed INTEGER DEFAULT 0
);

-- Indexes for common filters
CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_history_method ON history(request_method);
CREATE INDEX IF NOT EXISTS idx_history_status ON history(response_status);
CREATE INDEX IF NOT EXISTS idx_history_collection ON history(collection_id);
CREATE INDEX IF NOT EXISTS idx_history_request ON history(request_id);
CREATE INDEX IF NOT EXISTS idx_history_environment ON history(environment);
"""

INSERT_HISTORY_SQL = (
    f"INSERT INTO history ({', '.join(HISTORY_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in HISTORY_COLUMNS)})"
)

UPDATE_HISTORY_SQL = (
    "UPDATE history SET "
    + ", ".join(f"{col} = ?" for col in HISTORY_COLUMNS[1:])
    + " WHERE id = ?"
)

# Structured fields persisted as JSON text
_JSON_FIELDS = ("request_headers", "response_headers", "tags", "metadata")


def generate_id() -> str:
    """Generate a unique ID for a history entry."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current UTC time in storage format."""
    return to_db_time(datetime.now(UTC))


def entry_values(entry: Entry, entry_id: str) -> list[Any]:
    """Column values for an entry, in HISTORY_COLUMNS order."""
    data = entry.model_dump()
    data["id"] = entry_id
    data["timestamp"] = to_db_time(entry.timestamp)
    for name in _JSON_FIELDS:
        data[name] = json.dumps(data[name])
    return [data[col] for col in HISTORY_COLUMNS]


def row_to_entry(row: sqlite3.Row, operation: str) -> Entry:
    """
    Decode a history row.

    Raises:
        StorageReadError: If a JSON field or the timestamp is malformed
    """
    try:
        data: dict[str, Any] = {
            "id": row["id"],
            "timestamp": from_db_time(row["timestamp"]),
            "request_method": row["request_method"],
            "request_url": row["request_url"],
            "request_body": row["request_body"] or "",
            "response_status": row["response_status"],
            "response_status_text": row["response_status_text"] or "",
            "response_body": row["response_body"] or "",
            "response_time": row["response_time"] or 0,
            "response_size": row["response_size"] or 0,
            "collection_id": row["collection_id"] or "",
            "collection_name": row["collection_name"] or "",
            "request_id": row["request_id"] or "",
            "request_name": row["request_name"] or "",
            "environment": row["environment"] or "",
            "notes": row["notes"] or "",
            "tests_passed": row["tests_passed"] or 0,
            "tests_failed": row["tests_failed"] or 0,
        }
        for name in _JSON_FIELDS:
            raw = row[name]
            data[name] = json.loads(raw) if raw else None
        return Entry.model_validate(data)
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError
        raise StorageReadError(
            operation=operation,
            underlying_error=f"malformed history row {row['id']!r}: {e}",
        ) from e


class HistoryStore:
    """
    SQLite store for recorded HTTP exchanges.

    Usage:
        store = HistoryStore("history.db")
        entry_id = store.add(Entry(request_method="GET", request_url=url, ...))
        recent = store.list(QueryOptions(limit=20))
        store.close()

    Or use as context manager:
        with HistoryStore.in_memory() as store:
            ...
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        journal_mode: str = "wal",
        busy_timeout_ms: int = 5000,
    ) -> None:
        """
        Open (and create if needed) a history database.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
                     Parent directories are created if missing.
            journal_mode: SQLite journal mode for file-backed stores
            busy_timeout_ms: How long to wait on a locked database file
        """
        self.db_path = db_path if str(db_path) == MEMORY_PATH else Path(db_path)
        self.journal_mode = journal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = RWLock()
        self._closed = False
        self._conn: sqlite3.Connection | None = None
        self._connect()
        try:
            self._init_schema()
        except Exception:
            self._conn.close()
            self._conn = None
            raise
        logger.debug("opened %s at %s", type(self).__name__, self.db_path)

    @classmethod
    def in_memory(cls, **kwargs: Any) -> "HistoryStore":
        """Create a transient store that lives only as long as this object."""
        return cls(MEMORY_PATH, **kwargs)

    @classmethod
    def from_config(cls, config: StoreConfig) -> "HistoryStore":
        """Create a store from a loaded StoreConfig."""
        if config.in_memory:
            return cls.in_memory(busy_timeout_ms=config.busy_timeout_ms)
        return cls(
            config.resolved_path(),
            journal_mode=config.journal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )

    @property
    def in_memory_store(self) -> bool:
        """True for transient stores."""
        return self.db_path == MEMORY_PATH

    @property
    def closed(self) -> bool:
        """True once close() has completed."""
        return self._closed

    def _connect(self) -> None:
        """Establish database connection."""
        journal_mode = self._journal_mode_sql()
        try:
            if not self.in_memory_store:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            if not self.in_memory_store:
                self._conn.execute(f"PRAGMA journal_mode = {journal_mode}")
        except (sqlite3.Error, OSError) as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _journal_mode_sql(self) -> str:
        mode = self.journal_mode.upper()
        if mode not in ("WAL", "DELETE", "TRUNCATE", "MEMORY"):
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Unsupported journal mode: {self.journal_mode}",
            )
        return mode

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            # Check/set schema version
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = cursor.fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="init_schema",
                message=f"Failed to initialize database: {e}",
            ) from e

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise StoreClosedError(operation=operation)

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def interrupt(self) -> None:
        """
        Abort the statement currently running on this store's connection.

        Safe to call from another thread; the interrupted call raises a
        StorageError and its transaction is rolled back.
        """
        conn = self._conn
        if conn is not None:
            conn.interrupt()

    def close(self) -> None:
        """Close the store. Idempotent; every later call raises StoreClosedError."""
        with self._lock.write_lock():
            if self._closed:
                return
            self._closed = True
            conn, self._conn = self._conn, None
            try:
                conn.close()
            except sqlite3.Error as e:
                raise StorageWriteError(operation="close", underlying_error=str(e)) from e
            logger.debug("closed %s at %s", type(self).__name__, self.db_path)

    def __enter__(self) -> "HistoryStore":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Entry Operations
    # =========================================================================

    def add(self, entry: Entry) -> str:
        """
        Record a new exchange.

        Args:
            entry: The exchange to store. When ``entry.id`` is empty a fresh
                   ID is generated; the caller's object is not modified.

        Returns:
            The ID of the stored entry

        Raises:
            DuplicateIDError: If an explicit ID is already stored
        """
        with self._lock.write_lock():
            self._check_open("add")
            entry_id = entry.id or generate_id()
            try:
                with self.transaction():
                    self._conn.execute(INSERT_HISTORY_SQL, entry_values(entry, entry_id))
            except sqlite3.IntegrityError as e:
                raise DuplicateIDError(
                    operation="add",
                    entry_id=entry_id,
                    underlying_error=str(e),
                ) from e
            except sqlite3.Error as e:
                raise StorageWriteError(operation="add", underlying_error=str(e)) from e
            return entry_id

    def get(self, entry_id: str) -> Entry:
        """
        Get an entry by ID.

        Raises:
            InvalidIDError: If entry_id is empty
            NotFoundError: If no entry has that ID
        """
        with self._lock.read_lock():
            self._check_open("get")
            if not entry_id:
                raise InvalidIDError(operation="get", key=entry_id)
            try:
                row = self._conn.execute(
                    f"SELECT {', '.join(HISTORY_COLUMNS)} FROM history WHERE id = ?",
                    (entry_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageReadError(operation="get", underlying_error=str(e)) from e
            if row is None:
                raise NotFoundError(operation="get", key=entry_id)
            return row_to_entry(row, "get")

    def list(self, opts: QueryOptions | None = None) -> list[Entry]:
        """
        List entries matching every filter set in opts.

        Args:
            opts: Filters, sort and pagination. Defaults to everything,
                  newest first.

        Returns:
            Matching entries (possibly empty)

        Raises:
            InvalidOptionError: If sort_by/sort_order is not recognised
        """
        opts = opts or QueryOptions()
        with self._lock.read_lock():
            self._check_open("list")
            query, params = build_list_query(opts)
            rows = self._fetch_all(query, params, "list")
            return [row_to_entry(row, "list") for row in rows]

    def count(self, opts: QueryOptions | None = None) -> int:
        """Count entries matching the same filters as list(), ignoring pagination."""
        opts = opts or QueryOptions()
        with self._lock.read_lock():
            self._check_open("count")
            query, params = build_list_query(opts, count_only=True)
            return self._fetch_all(query, params, "count")[0][0]

    def update(self, entry: Entry) -> None:
        """
        Replace every stored field of the entry with ``entry.id``.

        Raises:
            InvalidIDError: If entry.id is empty
            NotFoundError: If no entry has that ID
        """
        with self._lock.write_lock():
            self._check_open("update")
            if not entry.id:
                raise InvalidIDError(operation="update", key=entry.id)
            values = entry_values(entry, entry.id)
            try:
                with self.transaction():
                    cursor = self._conn.execute(UPDATE_HISTORY_SQL, values[1:] + [entry.id])
            except sqlite3.Error as e:
                raise StorageWriteError(operation="update", underlying_error=str(e)) from e
            if cursor.rowcount == 0:
                raise NotFoundError(operation="update", key=entry.id)

    def delete(self, entry_id: str) -> None:
        """
        Delete an entry by ID.

        Raises:
            InvalidIDError: If entry_id is empty
            NotFoundError: If nothing was deleted
        """
        with self._lock.write_lock():
            self._check_open("delete")
            if not entry_id:
                raise InvalidIDError(operation="delete", key=entry_id)
            try:
                with self.transaction():
                    cursor = self._conn.execute("DELETE FROM history WHERE id = ?", (entry_id,))
            except sqlite3.Error as e:
                raise StorageWriteError(operation="delete", underlying_error=str(e)) from e
            if cursor.rowcount == 0:
                raise NotFoundError(operation="delete", key=entry_id)

    def delete_many(self, opts: QueryOptions) -> int:
        """
        Delete entries by method, collection and time range.

        Other QueryOptions fields are ignored. With no filters set this
        deletes everything, like clear().

        Returns:
            Number of entries deleted
        """
        with self._lock.write_lock():
            self._check_open("delete_many")
            query, params = build_delete_query(opts)
            try:
                with self.transaction():
                    cursor = self._conn.execute(query, params)
            except sqlite3.Error as e:
                raise StorageWriteError(operation="delete_many", underlying_error=str(e)) from e
            logger.debug("delete_many removed %d entries", cursor.rowcount)
            return cursor.rowcount

    def search(self, query: str, opts: QueryOptions | None = None) -> list[Entry]:
        """
        Case-insensitive substring search over the text fields of entries.

        Matches url, method, request/response body, notes, collection name,
        request name and environment. Only the method, collection_id and
        limit of opts are applied. Results are newest first.
        """
        opts = opts or QueryOptions()
        with self._lock.read_lock():
            self._check_open("search")
            sql, params = build_search_query(query, opts)
            rows = self._fetch_all(sql, params, "search")
            return [row_to_entry(row, "search") for row in rows]

    def clear(self) -> None:
        """Delete every entry."""
        with self._lock.write_lock():
            self._check_open("clear")
            try:
                with self.transaction():
                    cursor = self._conn.execute("DELETE FROM history")
            except sqlite3.Error as e:
                raise StorageWriteError(operation="clear", underlying_error=str(e)) from e
            logger.info("cleared %d history entries", cursor.rowcount)

    # =========================================================================
    # Retention
    # =========================================================================

    def prune(
        self,
        opts: PruneOptions | PruneByAge | PruneByCount | PruneByDate | PruneBySize,
    ) -> PruneResult:
        """
        Apply one retention policy.

        Args:
            opts: A PrunePolicy variant, or legacy PruneOptions which select
                  a single policy by priority (age, count, date, size).

        Returns:
            How many entries were deleted and the response bytes they held.
            A PruneOptions that selects no policy returns a zero result.
        """
        with self._lock.write_lock():
            self._check_open("prune")
            policy = opts.to_policy() if isinstance(opts, PruneOptions) else opts
            if policy is None:
                return PruneResult()

            try:
                with self.transaction():
                    result = self._apply_prune(policy)
            except sqlite3.Error as e:
                raise StorageWriteError(operation="prune", underlying_error=str(e)) from e

            logger.info(
                "pruned %d entries (%d bytes) by %s",
                result.deleted_count,
                result.freed_bytes,
                policy.mode,
            )
            return result

    def _apply_prune(
        self,
        policy: PruneByAge | PruneByCount | PruneByDate | PruneBySize,
    ) -> PruneResult:
        preds = scope_predicates(policy.scope)

        if isinstance(policy, PruneByAge):
            cutoff = datetime.now(UTC) - policy.older_than
            preds.add("timestamp < ?", to_db_time(cutoff))
            return self._delete_matching(preds)

        if isinstance(policy, PruneByDate):
            preds.add("timestamp < ?", to_db_time(policy.before))
            return self._delete_matching(preds)

        if isinstance(policy, PruneByCount):
            total = self._conn.execute(
                "SELECT COUNT(*) FROM history" + preds.where(), preds.params
            ).fetchone()[0]
            if total <= policy.keep_last:
                return PruneResult()
            oldest = (
                "SELECT id FROM history" + preds.where()
                + " ORDER BY timestamp ASC, rowid ASC LIMIT ?"
            )
            params = preds.params + [total - policy.keep_last]
            freed = self._conn.execute(
                f"SELECT COALESCE(SUM(response_size), 0) FROM history WHERE id IN ({oldest})",
                params,
            ).fetchone()[0]
            cursor = self._conn.execute(f"DELETE FROM history WHERE id IN ({oldest})", params)
            return PruneResult(deleted_count=cursor.rowcount, freed_bytes=freed)

        # PruneBySize: drop oldest first until the remainder fits
        rows = self._conn.execute(
            "SELECT id, COALESCE(response_size, 0) AS size FROM history"
            + preds.where()
            + " ORDER BY timestamp ASC, rowid ASC",
            preds.params,
        ).fetchall()
        remaining = sum(row["size"] for row in rows)
        victims: list[str] = []
        freed = 0
        for row in rows:
            if remaining <= policy.max_total_size:
                break
            victims.append(row["id"])
            freed += row["size"]
            remaining -= row["size"]
        self._conn.executemany(
            "DELETE FROM history WHERE id = ?", [(victim,) for victim in victims]
        )
        return PruneResult(deleted_count=len(victims), freed_bytes=freed)

    def _delete_matching(self, preds: Predicates) -> PruneResult:
        freed = self._conn.execute(
            "SELECT COALESCE(SUM(response_size), 0) FROM history" + preds.where(),
            preds.params,
        ).fetchone()[0]
        cursor = self._conn.execute("DELETE FROM history" + preds.where(), preds.params)
        return PruneResult(deleted_count=cursor.rowcount, freed_bytes=freed)

    # =========================================================================
    # Statistics
    # =========================================================================

    def stats(self) -> Stats:
        """Aggregate counters over every stored entry."""
        with self._lock.read_lock():
            self._check_open("stats")
            try:
                totals = self._conn.execute(
                    """
                    SELECT COUNT(*) AS total,
                        COALESCE(SUM(response_size), 0) AS size,
                        COALESCE(AVG(response_time), 0) AS avg_time,
                        MIN(timestamp) AS oldest,
                        MAX(timestamp) AS newest,
                        COALESCE(SUM(CASE WHEN response_status >= 200
                            AND response_status < 300 THEN 1 ELSE 0 END), 0) AS success
                    FROM history
                    """
                ).fetchone()
                methods = self._conn.execute(
                    "SELECT request_method, COUNT(*) FROM history GROUP BY request_method"
                ).fetchall()
                statuses = self._conn.execute(
                    "SELECT response_status, COUNT(*) FROM history GROUP BY response_status"
                ).fetchall()
                collections = self._conn.execute(
                    """
                    SELECT collection_id, COUNT(*) FROM history
                    WHERE collection_id IS NOT NULL AND collection_id != ''
                    GROUP BY collection_id
                    """
                ).fetchall()
            except sqlite3.Error as e:
                raise StorageReadError(operation="stats", underlying_error=str(e)) from e

            total = totals["total"]
            return Stats(
                total_entries=total,
                total_requests=total,
                total_size=totals["size"],
                oldest_entry=from_db_time(totals["oldest"]) if totals["oldest"] else None,
                newest_entry=from_db_time(totals["newest"]) if totals["newest"] else None,
                method_counts={row[0]: row[1] for row in methods},
                status_counts={row[0]: row[1] for row in statuses},
                average_time=float(totals["avg_time"]),
                success_rate=totals["success"] / total if total else 0.0,
                collection_counts={row[0]: row[1] for row in collections},
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fetch_all(self, query: str, params: list[Any], operation: str) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(operation=operation, underlying_error=str(e)) from e
