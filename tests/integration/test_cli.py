"""
Integration tests for the exchangelog CLI.

Tests cover:
- Listing, showing and searching entries
- Statistics output
- Prune policies from flags and from config
- Deletion commands
- Cache subcommands
- Error reporting and exit codes
"""

import json
from pathlib import Path
from typing import Callable

import pytest
from typer.testing import CliRunner

from exchangelog import __version__
from exchangelog.cli import app
from exchangelog.schema import Entry
from exchangelog.store import CacheStore, HistoryStore

runner = CliRunner()

EntryFactory = Callable[..., Entry]


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    """Path for a CLI test database."""
    return temp_dir / "history.db"


@pytest.fixture
def seeded(db_path: Path, make_entry: EntryFactory) -> dict[str, str]:
    """A database with three exchanges, one with a cached body."""
    with CacheStore(db_path) as store:
        return {
            "old": store.add(
                make_entry(
                    minutes_ago=30,
                    response_size=100,
                    environment="production",
                    notes="first call",
                )
            ),
            "post": store.add(
                make_entry(
                    minutes_ago=20,
                    request_method="POST",
                    request_url="https://api.example.com/orders",
                    response_status=201,
                    response_size=200,
                    environment="production",
                )
            ),
            "cached": store.add_with_cached_body(
                make_entry(
                    minutes_ago=10,
                    response_status=404,
                    response_body='{"error": "missing"}',
                    environment="staging",
                )
            ),
        }


@pytest.fixture
def config_file(temp_dir: Path, db_path: Path) -> Path:
    """A YAML config pointing at db_path with a count retention policy."""
    path = temp_dir / "store.yaml"
    path.write_text(
        f"db_path: {db_path}\n"
        "cache_enabled: true\n"
        "retention:\n"
        "  mode: count\n"
        "  keep_last: 1\n"
    )
    return path


def _ids(output: str) -> list[str]:
    return [item["id"] for item in json.loads(output)]


# =============================================================================
# General
# =============================================================================


class TestGeneral:
    """Tests for top-level options."""

    def test_version(self) -> None:
        """--version prints the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self) -> None:
        """--help lists the commands."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("list", "show", "search", "stats", "prune", "cache"):
            assert command in result.output


# =============================================================================
# Query Commands
# =============================================================================


class TestListCommand:
    """Tests for `exchangelog list`."""

    def test_list_json_newest_first(self, db_path: Path, seeded: dict[str, str]) -> None:
        """JSON output is newest first."""
        result = runner.invoke(app, ["list", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        assert _ids(result.stdout) == [seeded["cached"], seeded["post"], seeded["old"]]

    def test_list_filters(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Flags map onto query filters."""
        result = runner.invoke(
            app,
            ["list", "--db", str(db_path), "--json", "-m", "GET", "-e", "production"],
        )
        assert result.exit_code == 0
        assert _ids(result.stdout) == [seeded["old"]]

    def test_list_ascending_with_limit(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--asc and --limit apply."""
        result = runner.invoke(app, ["list", "--db", str(db_path), "--json", "--asc", "-n", "2"])
        assert result.exit_code == 0
        assert _ids(result.stdout) == [seeded["old"], seeded["post"]]

    def test_list_table(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Table output shows short IDs."""
        result = runner.invoke(app, ["list", "--db", str(db_path)])
        assert result.exit_code == 0
        assert seeded["post"][:8] in result.output

    def test_list_empty(self, db_path: Path) -> None:
        """An empty database says so."""
        result = runner.invoke(app, ["list", "--db", str(db_path)])
        assert result.exit_code == 0
        assert "No entries found" in result.output

    def test_list_bad_sort(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Unknown sort columns are reported as errors."""
        result = runner.invoke(app, ["list", "--db", str(db_path), "--sort-by", "password"])
        assert result.exit_code == 1
        assert "sort_by" in result.output

    def test_list_negative_limit(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Out-of-range pagination is reported, not raised."""
        result = runner.invoke(app, ["list", "--db", str(db_path), "--limit=-1"])
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Invalid options" in result.output
        assert "limit" in result.output

    def test_list_negative_offset(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Negative offsets are rejected the same way."""
        result = runner.invoke(app, ["list", "--db", str(db_path), "--offset=-3"])
        assert result.exit_code == 1
        assert "Invalid options" in result.output


class TestShowCommand:
    """Tests for `exchangelog show`."""

    def test_show_resolves_cached_body(self, db_path: Path, seeded: dict[str, str]) -> None:
        """The cached body is printed, not its hash."""
        result = runner.invoke(app, ["show", seeded["cached"], "--db", str(db_path)])
        assert result.exit_code == 0
        assert '{"error": "missing"}' in result.output

    def test_show_json(self, db_path: Path, seeded: dict[str, str]) -> None:
        """JSON output carries both the stored and resolved body."""
        result = runner.invoke(app, ["show", seeded["cached"], "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["id"] == seeded["cached"]
        assert data["resolved_response_body"] == '{"error": "missing"}'
        assert data["response_body"] != data["resolved_response_body"]

    def test_show_missing(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Unknown IDs exit 1."""
        result = runner.invoke(app, ["show", "nope", "--db", str(db_path)])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_show_missing_json(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Errors are structured in JSON mode."""
        result = runner.invoke(app, ["show", "nope", "--db", str(db_path), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "NotFoundError"


class TestSearchAndStats:
    """Tests for `exchangelog search` and `exchangelog stats`."""

    def test_search(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Search finds text in notes."""
        result = runner.invoke(app, ["search", "FIRST CALL", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        assert _ids(result.stdout) == [seeded["old"]]

    def test_search_method(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--method narrows search."""
        result = runner.invoke(
            app, ["search", "example", "--db", str(db_path), "--json", "-m", "POST"]
        )
        assert _ids(result.stdout) == [seeded["post"]]

    def test_search_negative_limit(self, db_path: Path, seeded: dict[str, str]) -> None:
        """search reports invalid options like list."""
        result = runner.invoke(app, ["search", "example", "--db", str(db_path), "--limit=-1"])
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Invalid options" in result.output

    def test_stats_json(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Stats are reported as JSON."""
        result = runner.invoke(app, ["stats", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_entries"] == 3
        assert data["method_counts"] == {"GET": 2, "POST": 1}

    def test_stats_text(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Text stats include the entry count."""
        result = runner.invoke(app, ["stats", "--db", str(db_path)])
        assert result.exit_code == 0
        assert "Entries:" in result.output
        assert "3" in result.output


# =============================================================================
# Maintenance Commands
# =============================================================================


class TestPruneCommand:
    """Tests for `exchangelog prune`."""

    def test_keep_last(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--keep-last keeps the newest entries."""
        result = runner.invoke(app, ["prune", "--db", str(db_path), "--keep-last", "1"])
        assert result.exit_code == 0
        assert "Deleted 2 entries" in result.output
        with HistoryStore(db_path) as store:
            assert [e.id for e in store.list()] == [seeded["cached"]]

    def test_older_than_json(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--older-than takes short durations."""
        result = runner.invoke(
            app, ["prune", "--db", str(db_path), "--older-than", "15m", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data == {"deleted_count": 2, "freed_bytes": 300}

    def test_max_size(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--max-size drops the oldest entries first."""
        result = runner.invoke(
            app, ["prune", "--db", str(db_path), "--max-size", "250", "--json"]
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["deleted_count"] == 1

    def test_bad_duration(self, db_path: Path) -> None:
        """Malformed durations exit 1."""
        result = runner.invoke(app, ["prune", "--db", str(db_path), "--older-than", "soon"])
        assert result.exit_code == 1
        assert "Invalid duration" in result.output

    def test_nothing_to_do(self, db_path: Path, seeded: dict[str, str]) -> None:
        """No policy flags exit 1 without deleting."""
        result = runner.invoke(app, ["prune", "--db", str(db_path)])
        assert result.exit_code == 1
        assert "Nothing to do" in result.output
        with HistoryStore(db_path) as store:
            assert store.count() == 3

    def test_auto_uses_config(self, config_file: Path, seeded: dict[str, str]) -> None:
        """--auto applies the configured retention policy."""
        result = runner.invoke(app, ["prune", "-c", str(config_file), "--auto", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["deleted_count"] == 2

    def test_auto_without_policy(self, db_path: Path) -> None:
        """--auto without a configured policy exits 1."""
        result = runner.invoke(app, ["prune", "--db", str(db_path), "--auto"])
        assert result.exit_code == 1
        assert "No retention policy" in result.output


class TestDeleteCommands:
    """Tests for `exchangelog delete` and `exchangelog clear`."""

    def test_delete(self, db_path: Path, seeded: dict[str, str]) -> None:
        """One entry is removed."""
        result = runner.invoke(app, ["delete", seeded["post"], "--db", str(db_path)])
        assert result.exit_code == 0
        with HistoryStore(db_path) as store:
            assert store.count() == 2

    def test_delete_missing(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Deleting an unknown ID exits 1."""
        result = runner.invoke(app, ["delete", "nope", "--db", str(db_path)])
        assert result.exit_code == 1

    def test_clear_confirmed(self, db_path: Path, seeded: dict[str, str]) -> None:
        """--yes skips the prompt."""
        result = runner.invoke(app, ["clear", "--db", str(db_path), "--yes"])
        assert result.exit_code == 0
        assert "History cleared" in result.output
        with HistoryStore(db_path) as store:
            assert store.count() == 0

    def test_clear_declined(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Declining the prompt keeps everything."""
        result = runner.invoke(app, ["clear", "--db", str(db_path)], input="n\n")
        assert result.exit_code == 1
        with HistoryStore(db_path) as store:
            assert store.count() == 3


# =============================================================================
# Cache Commands
# =============================================================================


class TestCacheCommands:
    """Tests for `exchangelog cache ...`."""

    def test_cache_stats(self, db_path: Path, seeded: dict[str, str]) -> None:
        """One cached body is reported."""
        result = runner.invoke(app, ["cache", "stats", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_entries"] == 1
        assert data["hit_count"] == 0

    def test_cache_prune(self, db_path: Path, seeded: dict[str, str]) -> None:
        """Orphaned bodies are removed, referenced ones kept."""
        with CacheStore(db_path) as store:
            store.cache_response("orphan")

        result = runner.invoke(app, ["cache", "prune", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"removed": 1}

    def test_cache_clear(self, db_path: Path, seeded: dict[str, str]) -> None:
        """cache clear empties the cache only."""
        result = runner.invoke(app, ["cache", "clear", "--db", str(db_path), "--yes"])
        assert result.exit_code == 0
        assert "Cache cleared" in result.output
        with CacheStore(db_path) as store:
            assert store.cache_stats().total_entries == 0
            assert store.count() == 3

    def test_cache_disabled(self, temp_dir: Path, db_path: Path) -> None:
        """Cache commands refuse a cache-less configuration."""
        config_path = temp_dir / "nocache.yaml"
        config_path.write_text(f"db_path: {db_path}\ncache_enabled: false\n")
        result = runner.invoke(app, ["cache", "stats", "-c", str(config_path)])
        assert result.exit_code == 1
        assert "disabled" in result.output

    def test_bad_config(self, temp_dir: Path) -> None:
        """An invalid config file is reported as an error."""
        config_path = temp_dir / "bad.yaml"
        config_path.write_text("journal_mode: turbo\n")
        result = runner.invoke(app, ["stats", "-c", str(config_path)])
        assert result.exit_code == 1
        assert "E6001" in result.output
