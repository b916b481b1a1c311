"""
Storage module for exchangelog.

This module provides SQLite-based persistence for recorded HTTP exchanges
and a content-addressable cache for their response bodies.

Tables:
    - history: One row per recorded exchange
    - response_cache: One row per distinct response body (CacheStore only)

Stores:
    - HistoryStore: CRUD, filtered queries, search, retention, statistics
    - CacheStore: HistoryStore plus deduplicated response bodies with
      referential garbage collection against the history table
"""

from exchangelog.schema import StoreConfig
from exchangelog.store.cache import CacheStore, content_hash
from exchangelog.store.db import HistoryStore, generate_id


def open_store(config: StoreConfig) -> HistoryStore:
    """Open the store a configuration describes (a CacheStore when caching is enabled)."""
    if config.cache_enabled:
        return CacheStore.from_config(config)
    return HistoryStore.from_config(config)


__all__ = [
    "CacheStore",
    "HistoryStore",
    "content_hash",
    "generate_id",
    "open_store",
]
