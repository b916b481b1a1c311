"""
Unit tests for schema models.

Tests cover:
- Entry defaults and timestamp normalization
- QueryOptions validation
- Prune policy variants and PruneOptions priority
- Duration parsing
- StoreConfig loading from YAML
"""

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from exchangelog.errors import ConfigError
from exchangelog.schema import (
    Entry,
    PruneByAge,
    PruneByCount,
    PruneByDate,
    PruneBySize,
    PruneOptions,
    PruneScope,
    QueryOptions,
    StoreConfig,
    ensure_utc,
    load_config,
    load_config_from_string,
    parse_duration,
)


class TestEntry:
    """Tests for the Entry model."""

    def test_defaults(self) -> None:
        """Optional fields default to empty values."""
        entry = Entry(request_method="GET", request_url="https://example.com")
        assert entry.id == ""
        assert entry.request_headers is None
        assert entry.tags is None
        assert entry.tests_passed == 0
        assert entry.timestamp.tzinfo is not None

    def test_naive_timestamp_is_utc(self) -> None:
        """Naive timestamps are read as UTC."""
        entry = Entry(timestamp=datetime(2024, 1, 1, 12, 0, 0))
        assert entry.timestamp == datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)

    def test_aware_timestamp_converted_to_utc(self) -> None:
        """Aware timestamps are converted to UTC without changing the instant."""
        plus_two = timezone(timedelta(hours=2))
        entry = Entry(timestamp=datetime(2024, 1, 1, 14, 0, 0, tzinfo=plus_two))
        assert entry.timestamp.utcoffset() == timedelta(0)
        assert entry.timestamp.hour == 12

    def test_rejects_unknown_fields(self) -> None:
        """Typos in field names are errors."""
        with pytest.raises(ValidationError):
            Entry(request_metod="GET")

    def test_rejects_negative_sizes(self) -> None:
        """Sizes and timings cannot be negative."""
        with pytest.raises(ValidationError):
            Entry(response_size=-1)

    def test_entry_is_mutable(self) -> None:
        """Callers can fill an entry in after creating it."""
        entry = Entry()
        entry.notes = "flaky"
        assert entry.notes == "flaky"


class TestQueryOptions:
    """Tests for QueryOptions."""

    def test_all_defaults_mean_no_filter(self) -> None:
        """Zero values everywhere."""
        opts = QueryOptions()
        assert opts.method == ""
        assert opts.limit == 0
        assert opts.after is None
        assert opts.tags == []

    def test_negative_limit_rejected(self) -> None:
        """Pagination values must be non-negative."""
        with pytest.raises(ValidationError):
            QueryOptions(limit=-1)
        with pytest.raises(ValidationError):
            QueryOptions(offset=-5)

    def test_frozen(self) -> None:
        """Options are immutable."""
        opts = QueryOptions(method="GET")
        with pytest.raises(ValidationError):
            opts.method = "POST"

    def test_bounds_normalized(self) -> None:
        """Naive time bounds are treated as UTC."""
        opts = QueryOptions(after=datetime(2024, 5, 1))
        assert opts.after == datetime(2024, 5, 1, tzinfo=UTC)


class TestDurations:
    """Tests for duration helpers."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("12h", timedelta(hours=12)),
            ("7d", timedelta(days=7)),
            ("2w", timedelta(weeks=2)),
        ],
    )
    def test_parse_duration(self, text: str, expected: timedelta) -> None:
        """Short durations parse to timedeltas."""
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "7", "d7", "7 days", "-1d"])
    def test_parse_duration_invalid(self, text: str) -> None:
        """Anything else is rejected."""
        with pytest.raises(ValueError):
            parse_duration(text)

    def test_ensure_utc(self) -> None:
        """ensure_utc handles naive and aware values."""
        naive = datetime(2024, 1, 1)
        assert ensure_utc(naive).tzinfo is UTC
        assert ensure_utc(naive.replace(tzinfo=UTC)) == naive.replace(tzinfo=UTC)


class TestPrunePolicies:
    """Tests for prune policy variants."""

    def test_age_accepts_short_duration(self) -> None:
        """PruneByAge parses "7d"-style strings."""
        policy = PruneByAge(older_than="7d")
        assert policy.older_than == timedelta(days=7)
        assert policy.mode == "age"

    def test_age_must_be_positive(self) -> None:
        """Zero age is rejected."""
        with pytest.raises(ValidationError):
            PruneByAge(older_than=timedelta(0))

    def test_count_must_be_positive(self) -> None:
        """keep_last of zero is rejected."""
        with pytest.raises(ValidationError):
            PruneByCount(keep_last=0)

    def test_date_is_normalized(self) -> None:
        """PruneByDate compares in UTC."""
        policy = PruneByDate(before=datetime(2024, 1, 1))
        assert policy.before.tzinfo is not None

    def test_scope_defaults_empty(self) -> None:
        """A policy without scope covers everything."""
        assert PruneBySize(max_total_size=10).scope == PruneScope()


class TestPruneOptions:
    """Tests for the combined PruneOptions form."""

    def test_nothing_set_is_noop(self) -> None:
        """No mode selected resolves to None."""
        assert PruneOptions().to_policy() is None

    def test_age_wins_over_count(self) -> None:
        """older_than has the highest priority."""
        policy = PruneOptions(older_than=timedelta(hours=1), keep_last=5).to_policy()
        assert isinstance(policy, PruneByAge)

    def test_count_wins_over_date(self) -> None:
        """keep_last beats before."""
        policy = PruneOptions(keep_last=5, before=datetime(2024, 1, 1)).to_policy()
        assert isinstance(policy, PruneByCount)
        assert policy.keep_last == 5

    def test_date_wins_over_size(self) -> None:
        """before beats max_total_size."""
        policy = PruneOptions(before=datetime(2024, 1, 1), max_total_size=100).to_policy()
        assert isinstance(policy, PruneByDate)

    def test_size_alone(self) -> None:
        """max_total_size selects the size policy."""
        assert isinstance(PruneOptions(max_total_size=100).to_policy(), PruneBySize)

    def test_zero_age_is_ignored(self) -> None:
        """A zero duration does not select the age policy."""
        policy = PruneOptions(older_than=timedelta(0), keep_last=3).to_policy()
        assert isinstance(policy, PruneByCount)

    def test_scope_is_carried(self) -> None:
        """Scoping filters travel with the selected policy."""
        policy = PruneOptions(older_than=timedelta(days=1), collection_id="col-1").to_policy()
        assert policy.scope.collection_id == "col-1"


class TestStoreConfig:
    """Tests for configuration loading."""

    def test_defaults(self) -> None:
        """Default config is a file-backed cache store."""
        config = StoreConfig()
        assert config.db_path == "exchangelog.db"
        assert config.cache_enabled is True
        assert config.retention is None
        assert not config.in_memory

    def test_load_from_string(self, sample_config_yaml: str) -> None:
        """YAML maps onto the model, including the retention variant."""
        config = load_config_from_string(sample_config_yaml)
        assert config.in_memory
        assert config.busy_timeout_ms == 2000
        assert isinstance(config.retention, PruneByCount)
        assert config.retention.keep_last == 2

    def test_load_age_retention(self) -> None:
        """Age retention accepts short durations in YAML."""
        config = load_config_from_string("retention:\n  mode: age\n  older_than: 30d\n")
        assert isinstance(config.retention, PruneByAge)
        assert config.retention.older_than == timedelta(days=30)

    def test_empty_document_uses_defaults(self) -> None:
        """An empty file is a valid config."""
        assert load_config_from_string("") == StoreConfig()

    def test_load_from_file(self, temp_dir: Path, sample_config_yaml: str) -> None:
        """load_config reads a YAML file."""
        path = temp_dir / "store.yaml"
        path.write_text(sample_config_yaml)
        assert load_config(path).journal_mode == "wal"

    def test_unknown_field_is_config_error(self) -> None:
        """Schema violations surface as ConfigError."""
        with pytest.raises(ConfigError):
            load_config_from_string("db_pth: x.db\n")

    def test_bad_journal_mode(self) -> None:
        """Journal mode is restricted."""
        with pytest.raises(ConfigError):
            load_config_from_string("journal_mode: turbo\n")

    def test_malformed_yaml(self) -> None:
        """YAML syntax errors surface as ConfigError."""
        with pytest.raises(ConfigError):
            load_config_from_string("db_path: [unclosed\n")

    def test_non_mapping(self) -> None:
        """The top level must be a mapping."""
        with pytest.raises(ConfigError):
            load_config_from_string("- a\n- b\n")

    def test_resolved_path_expands_user(self) -> None:
        """~ is expanded."""
        config = StoreConfig(db_path="~/history.db")
        assert "~" not in str(config.resolved_path())
