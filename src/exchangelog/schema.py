"""
Schema definitions for exchangelog.

This module defines all the Pydantic models used throughout exchangelog:
- Entry: One recorded request/response exchange
- QueryOptions: Filters, sorting and pagination for history queries
- Stats/CacheStats/CacheEntry: Aggregates reported by the stores
- PruneOptions and the PrunePolicy variants: Retention directives
- StoreConfig: On-disk configuration loaded from YAML

Design Decisions:
    - Timestamps are always timezone-aware UTC; naive values are read as UTC
    - Query and prune models are immutable (frozen=True)
    - Entry stays mutable so callers can build it up field by field
    - Unknown fields are rejected everywhere (extra="forbid")
"""

import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from exchangelog.errors import ConfigError


# =============================================================================
# Helpers
# =============================================================================

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$")
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_duration(text: str) -> timedelta:
    """
    Parse a short duration such as "30m", "12h", "7d" or "2w".

    Raises:
        ValueError: If the text is not a number followed by s/m/h/d/w
    """
    match = _DURATION_RE.match(text)
    if match is None:
        msg = f"Invalid duration: {text!r} (expected e.g. 30m, 12h, 7d)"
        raise ValueError(msg)
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# History Models
# =============================================================================


class Entry(BaseModel):
    """
    A single recorded request/response exchange.

    The store assigns ``id`` when it is empty. ``response_body`` is opaque
    to the store: it may hold the literal body or a response-cache hash.

    Attributes:
        id: Unique identifier (assigned on add when empty)
        timestamp: When the exchange happened (UTC)
        request_method: HTTP method
        request_url: Full request URL
        request_headers: Request headers, None when not recorded
        request_body: Request body text
        response_status: HTTP status code
        response_status_text: Reason phrase
        response_headers: Response headers, None when not recorded
        response_body: Literal body or cache hash
        response_time: Round trip in milliseconds
        response_size: Body size in bytes
        collection_id: Owning collection, if any
        collection_name: Owning collection display name
        request_id: Saved request this exchange came from
        request_name: Saved request display name
        environment: Environment name active for the exchange
        tags: Free-form labels
        notes: Free-form notes
        metadata: Free-form string map
        tests_passed: Number of passing assertions
        tests_failed: Number of failing assertions
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default="", description="Unique identifier")
    timestamp: datetime = Field(
        default_factory=_utc_now,
        description="When the exchange happened",
    )

    request_method: str = Field(default="", description="HTTP method")
    request_url: str = Field(default="", description="Request URL")
    request_headers: dict[str, str] | None = Field(default=None, description="Request headers")
    request_body: str = Field(default="", description="Request body")

    response_status: int = Field(default=0, description="HTTP status code")
    response_status_text: str = Field(default="", description="Reason phrase")
    response_headers: dict[str, str] | None = Field(default=None, description="Response headers")
    response_body: str = Field(default="", description="Literal body or cache hash")
    response_time: int = Field(default=0, description="Round trip in milliseconds", ge=0)
    response_size: int = Field(default=0, description="Body size in bytes", ge=0)

    collection_id: str = Field(default="", description="Owning collection ID")
    collection_name: str = Field(default="", description="Owning collection name")
    request_id: str = Field(default="", description="Saved request ID")
    request_name: str = Field(default="", description="Saved request name")
    environment: str = Field(default="", description="Active environment")
    tags: list[str] | None = Field(default=None, description="Free-form labels")
    notes: str = Field(default="", description="Free-form notes")
    metadata: dict[str, str] | None = Field(default=None, description="Free-form string map")

    tests_passed: int = Field(default=0, description="Passing assertions", ge=0)
    tests_failed: int = Field(default=0, description="Failing assertions", ge=0)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Store every timestamp as aware UTC."""
        return ensure_utc(v)


class QueryOptions(BaseModel):
    """
    Filters, sorting and pagination for history queries.

    Every field is optional and its zero value means "no filter". Filters
    are combined with AND. ``search`` is carried for callers that pass one
    options object around, but only HistoryStore.search() consumes it.

    Attributes:
        method: Exact HTTP method
        url_pattern: SQL LIKE pattern matched against the URL ("%" and "_")
        status_min: Minimum status code, inclusive
        status_max: Maximum status code, inclusive
        collection_id: Exact collection
        request_id: Exact saved request
        environment: Exact environment
        tags: Entries carrying at least one of these tags
        after: Only entries strictly after this time
        before: Only entries strictly before this time
        search: Free-text query for HistoryStore.search()
        tests_only: Only entries that ran any tests
        failed_tests_only: Only entries with at least one failing test
        limit: Maximum number of results (0 = no limit)
        offset: Number of results to skip
        sort_by: Column to sort by (default: timestamp)
        sort_order: "asc" or "desc" (default: desc)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: str = ""
    url_pattern: str = ""
    status_min: int = Field(default=0, ge=0)
    status_max: int = Field(default=0, ge=0)
    collection_id: str = ""
    request_id: str = ""
    environment: str = ""
    tags: list[str] = Field(default_factory=list)
    after: datetime | None = None
    before: datetime | None = None
    search: str = ""
    tests_only: bool = False
    failed_tests_only: bool = False

    limit: int = Field(default=0, ge=0)
    offset: int = Field(default=0, ge=0)

    sort_by: str = ""
    sort_order: str = ""

    @field_validator("after", "before")
    @classmethod
    def normalize_bounds(cls, v: datetime | None) -> datetime | None:
        """Compare bounds in UTC like the stored timestamps."""
        return ensure_utc(v) if v is not None else None


class Stats(BaseModel):
    """
    Aggregate statistics over the current history.

    Attributes:
        total_entries: Number of stored entries
        total_requests: Same as total_entries
        total_size: Sum of response_size
        oldest_entry: Earliest timestamp, None when empty
        newest_entry: Latest timestamp, None when empty
        method_counts: Entries per HTTP method
        status_counts: Entries per status code
        average_time: Mean response_time in milliseconds
        success_rate: Fraction of entries with a 2xx status
        collection_counts: Entries per non-empty collection ID
    """

    total_entries: int = 0
    total_requests: int = 0
    total_size: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    method_counts: dict[str, int] = Field(default_factory=dict)
    status_counts: dict[int, int] = Field(default_factory=dict)
    average_time: float = 0.0
    success_rate: float = 0.0
    collection_counts: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Retention Models
# =============================================================================


class PruneScope(BaseModel):
    """
    Restricts a prune policy to a subset of the history.

    Attributes:
        collection_id: Only prune this collection
        method: Only prune this HTTP method
        status_min: Only prune entries with status >= this
        status_max: Only prune entries with status <= this
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    collection_id: str = ""
    method: str = ""
    status_min: int = Field(default=0, ge=0)
    status_max: int = Field(default=0, ge=0)


class PruneByAge(BaseModel):
    """Delete entries older than ``older_than`` relative to now."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["age"] = "age"
    older_than: timedelta
    scope: PruneScope = Field(default_factory=PruneScope)

    @field_validator("older_than", mode="before")
    @classmethod
    def parse_short_duration(cls, v: Any) -> Any:
        """Accept "7d"-style strings in addition to pydantic's formats."""
        if isinstance(v, str) and _DURATION_RE.match(v):
            return parse_duration(v)
        return v

    @field_validator("older_than")
    @classmethod
    def require_positive(cls, v: timedelta) -> timedelta:
        """A zero or negative age would delete nothing or everything."""
        if v <= timedelta(0):
            msg = "older_than must be positive"
            raise ValueError(msg)
        return v


class PruneByCount(BaseModel):
    """Keep only the newest ``keep_last`` entries; a scope counts only its own entries."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["count"] = "count"
    keep_last: int = Field(..., gt=0)
    scope: PruneScope = Field(default_factory=PruneScope)


class PruneByDate(BaseModel):
    """Delete entries strictly before ``before``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["date"] = "date"
    before: datetime
    scope: PruneScope = Field(default_factory=PruneScope)

    @field_validator("before")
    @classmethod
    def normalize_before(cls, v: datetime) -> datetime:
        """Compare in UTC like the stored timestamps."""
        return ensure_utc(v)


class PruneBySize(BaseModel):
    """Delete the oldest entries until response sizes sum to ``max_total_size``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["size"] = "size"
    max_total_size: int = Field(..., ge=0)
    scope: PruneScope = Field(default_factory=PruneScope)


PrunePolicy = Annotated[
    PruneByAge | PruneByCount | PruneByDate | PruneBySize,
    Field(discriminator="mode"),
]


class PruneOptions(BaseModel):
    """
    Combined retention directive.

    Several modes may be set at once but only one is honoured, chosen by
    priority: older_than, then keep_last, then before, then max_total_size.
    Prefer passing a PrunePolicy variant directly, which cannot be ambiguous.

    The scope fields restrict every mode. With keep_last that means the
    newest N entries *within the scope* are kept and entries outside it are
    neither deleted nor counted: keep_last=1 with collection_id="a" leaves
    one entry of collection "a" and every entry of other collections.

    Attributes:
        older_than: Delete entries older than this duration
        before: Delete entries before this time
        keep_last: Keep only the last N entries
        max_total_size: Keep total response size at or below this many bytes
        collection_id: Only prune from this collection
        method: Only prune this method
        status_min: Only prune entries with status >= this
        status_max: Only prune entries with status <= this
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    older_than: timedelta | None = None
    before: datetime | None = None
    keep_last: int = Field(default=0, ge=0)
    max_total_size: int = Field(default=0, ge=0)

    collection_id: str = ""
    method: str = ""
    status_min: int = Field(default=0, ge=0)
    status_max: int = Field(default=0, ge=0)

    def to_policy(self) -> PruneByAge | PruneByCount | PruneByDate | PruneBySize | None:
        """Resolve the single policy these options select, or None for a no-op."""
        scope = PruneScope(
            collection_id=self.collection_id,
            method=self.method,
            status_min=self.status_min,
            status_max=self.status_max,
        )
        if self.older_than is not None and self.older_than > timedelta(0):
            return PruneByAge(older_than=self.older_than, scope=scope)
        if self.keep_last > 0:
            return PruneByCount(keep_last=self.keep_last, scope=scope)
        if self.before is not None:
            return PruneByDate(before=self.before, scope=scope)
        if self.max_total_size > 0:
            return PruneBySize(max_total_size=self.max_total_size, scope=scope)
        return None


class PruneResult(BaseModel):
    """
    Outcome of a prune.

    Attributes:
        deleted_count: Number of entries removed
        freed_bytes: Sum of response_size over removed entries
    """

    deleted_count: int = 0
    freed_bytes: int = 0


# =============================================================================
# Cache Models
# =============================================================================


class CacheStats(BaseModel):
    """
    Response cache statistics.

    Hit and miss counts are cumulative for the lifetime of the store
    (or since the last clear_cache()).
    """

    total_entries: int = 0
    total_size: int = 0
    hit_count: int = 0
    miss_count: int = 0
    hit_rate: float = 0.0


class CacheEntry(BaseModel):
    """Metadata for one cached response body."""

    model_config = ConfigDict(frozen=True)

    hash: str
    size: int
    created_at: datetime
    access_count: int
    last_accessed: datetime


# =============================================================================
# Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """
    On-disk configuration for opening a store.

    Attributes:
        db_path: SQLite file path, or ":memory:" for a transient store
        journal_mode: SQLite journal mode for file-backed stores
        busy_timeout_ms: How long to wait on a locked database file
        cache_enabled: Open a CacheStore instead of a plain HistoryStore
        retention: Default policy used by ``exchangelog prune --auto``
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: str = Field(default="exchangelog.db", min_length=1)
    journal_mode: Literal["wal", "delete", "truncate", "memory"] = "wal"
    busy_timeout_ms: int = Field(default=5000, ge=0)
    cache_enabled: bool = True
    retention: PrunePolicy | None = None

    @property
    def in_memory(self) -> bool:
        """True when the config describes a transient store."""
        return self.db_path == ":memory:"

    def resolved_path(self) -> Path:
        """The database path with ``~`` expanded."""
        return Path(self.db_path).expanduser()


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def _config_from_data(data: Any, source: str) -> StoreConfig:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(path=source, underlying_error="top level must be a mapping")
    try:
        return StoreConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(path=source, underlying_error=str(e)) from e


def load_config(path: Path | str) -> StoreConfig:
    """
    Load a store configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated StoreConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If the YAML is malformed or doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(path=str(path), underlying_error=str(e)) from e

    return _config_from_data(data, str(path))


def load_config_from_string(content: str) -> StoreConfig:
    """Load a store configuration from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(path="<string>", underlying_error=str(e)) from e
    return _config_from_data(data, "<string>")
