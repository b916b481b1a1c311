"""
Pytest configuration and fixtures for exchangelog tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from exchangelog.schema import Entry
from exchangelog.store import CacheStore, HistoryStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store() -> Generator[HistoryStore, None, None]:
    """An in-memory history store."""
    database = HistoryStore.in_memory()
    yield database
    database.close()


@pytest.fixture
def cache_store() -> Generator[CacheStore, None, None]:
    """An in-memory cache store."""
    database = CacheStore.in_memory()
    yield database
    database.close()


@pytest.fixture
def now() -> datetime:
    """A fixed reference time, rounded to the microsecond storage precision."""
    return datetime.now(UTC).replace(microsecond=0)


@pytest.fixture
def make_entry(now: datetime) -> Callable[..., Entry]:
    """
    Factory for entries.

    ``minutes_ago`` offsets the timestamp from the ``now`` fixture; every
    other keyword is passed straight to Entry.
    """

    def _make(minutes_ago: float = 0, **fields: Any) -> Entry:
        fields.setdefault("request_method", "GET")
        fields.setdefault("request_url", "https://api.example.com/users")
        fields.setdefault("response_status", 200)
        fields.setdefault("timestamp", now - timedelta(minutes=minutes_ago))
        return Entry(**fields)

    return _make


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a simple store configuration YAML for testing."""
    return """
db_path: ":memory:"
journal_mode: wal
busy_timeout_ms: 2000
cache_enabled: true
retention:
  mode: count
  keep_last: 2
"""
