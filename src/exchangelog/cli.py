"""
CLI entry point for exchangelog.

This module provides the Typer-based maintenance interface for a history
database. It is a thin layer over HistoryStore/CacheStore: every command
opens the store, runs one operation and prints the result.

Commands:
    list        List recorded exchanges with filters
    show        Show one exchange
    search      Free-text search over exchanges
    stats       Aggregate statistics
    prune       Apply a retention policy
    delete      Delete one exchange
    clear       Delete every exchange
    cache       Inspect and maintain the response cache (stats, prune, clear)
"""

import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Generator, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from exchangelog import __version__
from exchangelog.errors import ExchangeLogError
from exchangelog.schema import (
    Entry,
    PruneOptions,
    QueryOptions,
    StoreConfig,
    load_config,
    parse_duration,
)
from exchangelog.store import CacheStore, HistoryStore, open_store

# Initialize Typer app with metadata
app = typer.Typer(
    name="exchangelog",
    help="Inspect and maintain a recorded HTTP exchange history.",
    add_completion=False,
    no_args_is_help=True,
)

cache_app = typer.Typer(
    name="cache",
    help="Inspect and maintain the response cache.",
    no_args_is_help=True,
)
app.add_typer(cache_app, name="cache")

# Rich console for formatted output
console = Console()

DEFAULT_DB = "exchangelog.db"

DbOption = Annotated[
    Optional[Path],
    typer.Option(
        "--db",
        help=f"Path to the history database. Defaults to {DEFAULT_DB} or the config's db_path.",
        resolve_path=True,
    ),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to a YAML store configuration.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output in JSON format."),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]exchangelog[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log store activity to stderr."),
    ] = False,
) -> None:
    """
    exchangelog - Durable request/response history.

    Query, prune and maintain the SQLite history database written by an
    HTTP client.
    """
    if verbose:
        logging.basicConfig(
            stream=sys.stderr,
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            force=True,
        )


# =============================================================================
# Helpers
# =============================================================================


def _load_config(db: Optional[Path], config_path: Optional[Path]) -> StoreConfig:
    config = load_config(config_path) if config_path else StoreConfig(db_path=DEFAULT_DB)
    if db is not None:
        config = config.model_copy(update={"db_path": str(db)})
    return config


def _open(db: Optional[Path], config_path: Optional[Path]) -> HistoryStore:
    return open_store(_load_config(db, config_path))


@contextmanager
def _errors_exit(json_output: bool = False) -> Generator[None, None, None]:
    """Print library errors and exit with status 1."""
    try:
        yield
    except ExchangeLogError as e:
        if json_output:
            print(json.dumps({"error": True, **e.to_dict()}, indent=2, default=str))
        else:
            console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _query_options(**fields: Any) -> QueryOptions:
    try:
        return QueryOptions(**fields)
    except ValueError as e:
        console.print(f"[red]Invalid options: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from e


def _status_style(status: int) -> str:
    if 200 <= status < 300:
        return f"[green]{status}[/green]"
    if 300 <= status < 400:
        return f"[cyan]{status}[/cyan]"
    if status >= 400:
        return f"[red]{status}[/red]"
    return str(status)


def _entries_table(entries: list[Entry]) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Time")
    table.add_column("Method", width=7)
    table.add_column("Status", justify="right")
    table.add_column("URL", overflow="fold")
    table.add_column("ms", justify="right")
    table.add_column("Bytes", justify="right")

    for entry in entries:
        table.add_row(
            entry.id[:8],
            entry.timestamp.isoformat()[:19],
            entry.request_method,
            _status_style(entry.response_status),
            entry.request_url,
            str(entry.response_time),
            str(entry.response_size),
        )
    return table


def _print_entries(entries: list[Entry], json_output: bool) -> None:
    if json_output:
        print(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        console.print("[dim]No entries found.[/dim]")
        return
    console.print(_entries_table(entries))


# =============================================================================
# History Commands
# =============================================================================


@app.command("list")
def list_entries(
    db: DbOption = None,
    config: ConfigOption = None,
    method: Annotated[Optional[str], typer.Option("--method", "-m", help="HTTP method.")] = None,
    url: Annotated[
        Optional[str],
        typer.Option("--url", help="URL pattern; % and _ are wildcards."),
    ] = None,
    status_min: Annotated[int, typer.Option("--status-min", help="Minimum status.")] = 0,
    status_max: Annotated[int, typer.Option("--status-max", help="Maximum status.")] = 0,
    collection: Annotated[
        Optional[str], typer.Option("--collection", help="Collection ID.")
    ] = None,
    environment: Annotated[
        Optional[str], typer.Option("--environment", "-e", help="Environment name.")
    ] = None,
    failed_tests: Annotated[
        bool, typer.Option("--failed-tests", help="Only entries with failing tests.")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum entries.")] = 20,
    offset: Annotated[int, typer.Option("--offset", help="Entries to skip.")] = 0,
    sort_by: Annotated[
        str,
        typer.Option("--sort-by", help="timestamp, response_time, response_size, ..."),
    ] = "timestamp",
    ascending: Annotated[bool, typer.Option("--asc", help="Sort ascending.")] = False,
    json_output: JsonOption = False,
) -> None:
    """
    List recorded exchanges, newest first.

    Example:
        $ exchangelog list --method GET --status-min 400 -n 50
    """
    with _errors_exit(json_output):
        opts = _query_options(
            method=method or "",
            url_pattern=url or "",
            status_min=status_min,
            status_max=status_max,
            collection_id=collection or "",
            environment=environment or "",
            failed_tests_only=failed_tests,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order="asc" if ascending else "desc",
        )
        with _open(db, config) as store:
            entries = store.list(opts)
        _print_entries(entries, json_output)


@app.command()
def show(
    entry_id: Annotated[str, typer.Argument(help="ID of the entry to show.")],
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show every field of one exchange."""
    with _errors_exit(json_output):
        with _open(db, config) as store:
            entry = store.get(entry_id)
            body = (
                store.resolve_response_body(entry)
                if isinstance(store, CacheStore)
                else entry.response_body
            )

        if json_output:
            data = entry.model_dump(mode="json")
            data["resolved_response_body"] = body
            print(json.dumps(data, indent=2))
            return

        console.print(f"[bold]{entry.request_method} {entry.request_url}[/bold]")
        console.print(f"  ID: {entry.id}")
        console.print(f"  Time: {entry.timestamp.isoformat()}")
        console.print(
            f"  Status: {_status_style(entry.response_status)} {entry.response_status_text}"
        )
        console.print(f"  Duration: {entry.response_time}ms | Size: {entry.response_size} bytes")
        if entry.collection_name or entry.collection_id:
            console.print(f"  Collection: {entry.collection_name or entry.collection_id}")
        if entry.request_name:
            console.print(f"  Request: {entry.request_name}")
        if entry.environment:
            console.print(f"  Environment: {entry.environment}")
        if entry.tags:
            console.print(f"  Tags: {', '.join(entry.tags)}")
        if entry.tests_passed or entry.tests_failed:
            console.print(f"  Tests: {entry.tests_passed} passed, {entry.tests_failed} failed")
        if entry.notes:
            console.print(f"  Notes: {entry.notes}")
        if body:
            console.print()
            console.print(body, markup=False, highlight=False)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Text to look for (case-insensitive).")],
    db: DbOption = None,
    config: ConfigOption = None,
    method: Annotated[Optional[str], typer.Option("--method", "-m", help="HTTP method.")] = None,
    collection: Annotated[
        Optional[str], typer.Option("--collection", help="Collection ID.")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum entries.")] = 20,
    json_output: JsonOption = False,
) -> None:
    """
    Search URLs, bodies, notes and names.

    Example:
        $ exchangelog search users --method POST
    """
    with _errors_exit(json_output):
        opts = _query_options(method=method or "", collection_id=collection or "", limit=limit)
        with _open(db, config) as store:
            entries = store.search(query, opts)
        _print_entries(entries, json_output)


@app.command()
def stats(
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show aggregate statistics."""
    with _errors_exit(json_output):
        with _open(db, config) as store:
            result = store.stats()

        if json_output:
            print(result.model_dump_json(indent=2))
            return

        console.print(f"[bold]Entries:[/bold] {result.total_entries}")
        console.print(f"[bold]Total size:[/bold] {result.total_size} bytes")
        console.print(f"[bold]Average time:[/bold] {result.average_time:.1f}ms")
        console.print(f"[bold]Success rate:[/bold] {result.success_rate:.1%}")
        if result.oldest_entry and result.newest_entry:
            console.print(
                f"[bold]Range:[/bold] {result.oldest_entry.isoformat()[:19]}"
                f" .. {result.newest_entry.isoformat()[:19]}"
            )

        if result.method_counts:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Method")
            table.add_column("Count", justify="right")
            for name, count in sorted(result.method_counts.items()):
                table.add_row(name, str(count))
            console.print(table)

        if result.status_counts:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Status")
            table.add_column("Count", justify="right")
            for code, count in sorted(result.status_counts.items()):
                table.add_row(_status_style(code), str(count))
            console.print(table)


@app.command()
def prune(
    db: DbOption = None,
    config: ConfigOption = None,
    older_than: Annotated[
        Optional[str],
        typer.Option("--older-than", help="Delete entries older than e.g. 30m, 12h, 7d, 2w."),
    ] = None,
    keep_last: Annotated[
        int, typer.Option("--keep-last", help="Keep only the newest N entries.")
    ] = 0,
    before: Annotated[
        Optional[str],
        typer.Option("--before", help="Delete entries before this ISO date/time."),
    ] = None,
    max_size: Annotated[
        int,
        typer.Option("--max-size", help="Delete oldest entries until bodies total this many bytes."),
    ] = 0,
    collection: Annotated[
        Optional[str], typer.Option("--collection", help="Only prune this collection.")
    ] = None,
    auto: Annotated[
        bool, typer.Option("--auto", help="Use the retention policy from the config.")
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """
    Apply one retention policy.

    When several are given, --older-than wins over --keep-last, which wins
    over --before, which wins over --max-size.

    Example:
        $ exchangelog prune --older-than 30d
    """
    with _errors_exit(json_output):
        store_config = _load_config(db, config)

        if auto:
            policy = store_config.retention
            if policy is None:
                console.print("[red]No retention policy configured.[/red]")
                raise typer.Exit(code=1)
        else:
            try:
                opts = PruneOptions(
                    older_than=parse_duration(older_than) if older_than else None,
                    before=datetime.fromisoformat(before) if before else None,
                    keep_last=keep_last,
                    max_total_size=max_size,
                    collection_id=collection or "",
                )
            except ValueError as e:
                console.print(f"[red]{escape(str(e))}[/red]")
                raise typer.Exit(code=1) from e
            policy = opts.to_policy()
            if policy is None:
                console.print(
                    "[yellow]Nothing to do: pass --older-than, --keep-last, "
                    "--before, --max-size or --auto.[/yellow]"
                )
                raise typer.Exit(code=1)

        with open_store(store_config) as store:
            result = store.prune(policy)

        if json_output:
            print(result.model_dump_json(indent=2))
            return
        console.print(
            f"[green]✓[/green] Deleted {result.deleted_count} entries, "
            f"freed {result.freed_bytes} bytes"
        )


@app.command()
def delete(
    entry_id: Annotated[str, typer.Argument(help="ID of the entry to delete.")],
    db: DbOption = None,
    config: ConfigOption = None,
) -> None:
    """Delete one exchange."""
    with _errors_exit():
        with _open(db, config) as store:
            store.delete(entry_id)
        console.print(f"[green]✓[/green] Deleted {entry_id}")


@app.command()
def clear(
    db: DbOption = None,
    config: ConfigOption = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation.")] = False,
) -> None:
    """Delete every exchange."""
    if not yes:
        typer.confirm("Delete the entire history?", abort=True)
    with _errors_exit():
        with _open(db, config) as store:
            store.clear()
        console.print("[green]✓[/green] History cleared")


# =============================================================================
# Cache Commands
# =============================================================================


def _open_cache(db: Optional[Path], config_path: Optional[Path]) -> CacheStore:
    store = _open(db, config_path)
    if not isinstance(store, CacheStore):
        store.close()
        console.print("[red]The response cache is disabled in this configuration.[/red]")
        raise typer.Exit(code=1)
    return store


@cache_app.command("stats")
def cache_stats(
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show cache size and hit rate for this process."""
    with _errors_exit(json_output):
        with _open_cache(db, config) as store:
            result = store.cache_stats()

        if json_output:
            print(result.model_dump_json(indent=2))
            return
        console.print(f"[bold]Cached bodies:[/bold] {result.total_entries}")
        console.print(f"[bold]Total size:[/bold] {result.total_size} bytes")


@cache_app.command("prune")
def cache_prune(
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
) -> None:
    """Delete cached bodies no history entry refers to."""
    with _errors_exit(json_output):
        with _open_cache(db, config) as store:
            removed = store.prune_cache()

        if json_output:
            print(json.dumps({"removed": removed}))
            return
        console.print(f"[green]✓[/green] Removed {removed} unreferenced cached responses")


@cache_app.command("clear")
def cache_clear(
    db: DbOption = None,
    config: ConfigOption = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation.")] = False,
) -> None:
    """Delete every cached body."""
    if not yes:
        typer.confirm("Delete every cached response body?", abort=True)
    with _errors_exit():
        with _open_cache(db, config) as store:
            store.clear_cache()
        console.print("[green]✓[/green] Cache cleared")


if __name__ == "__main__":
    app()
