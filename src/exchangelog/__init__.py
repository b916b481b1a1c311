"""
exchangelog - Durable request/response history for HTTP clients.

exchangelog records every HTTP exchange a client performs in SQLite and
answers queries over that history. It provides:
- Filtered, sorted and paginated listing plus free-text search
- Retention policies (by age, count, date or total size)
- Aggregate statistics
- A content-addressable response-body cache with referential
  garbage collection

Example usage:
    from exchangelog import CacheStore, Entry, QueryOptions

    with CacheStore("history.db") as store:
        store.add(Entry(request_method="GET", request_url=url, response_status=200))
        store.list(QueryOptions(method="GET", limit=20))
"""

__version__ = "0.1.0"
__author__ = "exchangelog Contributors"

from exchangelog.errors import (
    ExchangeLogError,
    InvalidIDError,
    InvalidOptionError,
    NotFoundError,
    StorageError,
    StoreClosedError,
)
from exchangelog.schema import (
    CacheStats,
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
    load_config,
)
from exchangelog.store import CacheStore, HistoryStore, open_store

__all__ = [
    "__version__",
    "__author__",
    "CacheStats",
    "CacheStore",
    "Entry",
    "ExchangeLogError",
    "HistoryStore",
    "InvalidIDError",
    "InvalidOptionError",
    "NotFoundError",
    "PruneByAge",
    "PruneByCount",
    "PruneByDate",
    "PruneBySize",
    "PruneOptions",
    "PruneResult",
    "QueryOptions",
    "Stats",
    "StorageError",
    "StoreClosedError",
    "StoreConfig",
    "load_config",
    "open_store",
]
