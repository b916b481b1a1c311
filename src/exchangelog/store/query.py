"""
Parameterized SQL builders for the history table.

Every caller-controlled value is bound to a ``?`` placeholder; the only
text spliced into SQL is taken from the fixed column and direction
whitelists below. Filters are collected as a conjunctive list of
predicates and joined with AND.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from exchangelog.errors import InvalidOptionError
from exchangelog.schema import PruneScope, QueryOptions, ensure_utc

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = (
    "id",
    "timestamp",
    "request_method",
    "request_url",
    "request_headers",
    "request_body",
    "response_status",
    "response_status_text",
    "response_headers",
    "response_body",
    "response_time",
    "response_size",
    "collection_id",
    "collection_name",
    "request_id",
    "request_name",
    "environment",
    "tags",
    "notes",
    "metadata",
    "tests_passed",
    "tests_failed",
)

SELECT_HISTORY = f"SELECT {', '.join(HISTORY_COLUMNS)} FROM history"

SORT_COLUMNS = frozenset({
    "timestamp",
    "request_method",
    "request_url",
    "response_status",
    "response_time",
    "response_size",
})
DEFAULT_SORT_COLUMN = "timestamp"
DEFAULT_SORT_ORDER = "DESC"

# Columns matched by search(), in the order they are tried
SEARCH_COLUMNS = (
    "request_url",
    "request_method",
    "request_body",
    "response_body",
    "notes",
    "collection_name",
    "request_name",
    "environment",
)


def to_db_time(value: datetime) -> str:
    """
    Format a datetime for storage.

    A fixed-width UTC ISO format keeps lexical order equal to time order,
    so range predicates and ORDER BY work on the TEXT column.
    """
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class Predicates:
    """An AND-joined list of SQL predicates and their bound parameters."""

    clauses: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)

    def add(self, clause: str, *params: Any) -> None:
        self.clauses.append(clause)
        self.params.extend(params)

    def where(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(self.clauses)


# =============================================================================
# Predicate Builders
# =============================================================================


def filter_predicates(opts: QueryOptions) -> Predicates:
    """Predicates for list() and count(): every filter QueryOptions carries."""
    preds = Predicates()

    if opts.method:
        preds.add("request_method = ?", opts.method)
    if opts.url_pattern:
        preds.add("request_url LIKE ?", opts.url_pattern)
    if opts.status_min > 0:
        preds.add("response_status >= ?", opts.status_min)
    if opts.status_max > 0:
        preds.add("response_status <= ?", opts.status_max)
    if opts.collection_id:
        preds.add("collection_id = ?", opts.collection_id)
    if opts.request_id:
        preds.add("request_id = ?", opts.request_id)
    if opts.environment:
        preds.add("environment = ?", opts.environment)
    if opts.tags:
        placeholders = ", ".join("?" for _ in opts.tags)
        preds.add(
            "EXISTS (SELECT 1 FROM json_each(history.tags) "
            f"WHERE json_each.value IN ({placeholders}))",
            *opts.tags,
        )
    if opts.after is not None:
        preds.add("timestamp > ?", to_db_time(opts.after))
    if opts.before is not None:
        preds.add("timestamp < ?", to_db_time(opts.before))
    if opts.tests_only:
        preds.add("(tests_passed > 0 OR tests_failed > 0)")
    if opts.failed_tests_only:
        preds.add("tests_failed > 0")

    return preds


def delete_predicates(opts: QueryOptions) -> Predicates:
    """Predicates for delete_many(): method, collection and time range only."""
    preds = Predicates()

    if opts.method:
        preds.add("request_method = ?", opts.method)
    if opts.collection_id:
        preds.add("collection_id = ?", opts.collection_id)
    if opts.after is not None:
        preds.add("timestamp > ?", to_db_time(opts.after))
    if opts.before is not None:
        preds.add("timestamp < ?", to_db_time(opts.before))

    return preds


def scope_predicates(scope: PruneScope) -> Predicates:
    """Predicates restricting a prune policy to its scope."""
    preds = Predicates()

    if scope.collection_id:
        preds.add("collection_id = ?", scope.collection_id)
    if scope.method:
        preds.add("request_method = ?", scope.method)
    if scope.status_min > 0:
        preds.add("response_status >= ?", scope.status_min)
    if scope.status_max > 0:
        preds.add("response_status <= ?", scope.status_max)

    return preds


def search_predicates(term: str, opts: QueryOptions) -> Predicates:
    """
    Predicates for search().

    The term is wrapped in ``%...%`` and matched with LIKE, which folds
    ASCII case only. Wildcards inside the term are not escaped, so a
    query of "a_c" also matches "abc".
    """
    pattern = f"%{term}%"
    preds = Predicates()
    preds.add(
        "(" + " OR ".join(f"{col} LIKE ?" for col in SEARCH_COLUMNS) + ")",
        *([pattern] * len(SEARCH_COLUMNS)),
    )
    if opts.method:
        preds.add("request_method = ?", opts.method)
    if opts.collection_id:
        preds.add("collection_id = ?", opts.collection_id)
    return preds


# =============================================================================
# Query Builders
# =============================================================================


def order_clause(opts: QueryOptions) -> str:
    """
    Build the ORDER BY clause from the whitelisted sort column and order.

    Ties are broken by insertion order in the same direction so pages
    never overlap.

    Raises:
        InvalidOptionError: If sort_by or sort_order is not recognised
    """
    sort_by = (opts.sort_by or DEFAULT_SORT_COLUMN).lower()
    if sort_by not in SORT_COLUMNS:
        raise InvalidOptionError(operation="list", option="sort_by", value=opts.sort_by)

    sort_order = (opts.sort_order or DEFAULT_SORT_ORDER).upper()
    if sort_order not in ("ASC", "DESC"):
        raise InvalidOptionError(operation="list", option="sort_order", value=opts.sort_order)

    return f" ORDER BY {sort_by} {sort_order}, rowid {sort_order}"


def pagination_clause(limit: int, offset: int) -> tuple[str, list[Any]]:
    """LIMIT/OFFSET clause; SQLite needs a LIMIT before any OFFSET."""
    if limit > 0 and offset > 0:
        return " LIMIT ? OFFSET ?", [limit, offset]
    if limit > 0:
        return " LIMIT ?", [limit]
    if offset > 0:
        return " LIMIT -1 OFFSET ?", [offset]
    return "", []


def build_list_query(opts: QueryOptions, count_only: bool = False) -> tuple[str, list[Any]]:
    """Build the SELECT (or COUNT) for list()/count()."""
    preds = filter_predicates(opts)

    if count_only:
        return "SELECT COUNT(*) FROM history" + preds.where(), preds.params

    query = SELECT_HISTORY + preds.where() + order_clause(opts)
    page, page_params = pagination_clause(opts.limit, opts.offset)
    params = preds.params + page_params

    logger.debug("list query: %s params=%d", query + page, len(params))
    return query + page, params


def build_delete_query(opts: QueryOptions) -> tuple[str, list[Any]]:
    """Build the DELETE for delete_many()."""
    preds = delete_predicates(opts)
    return "DELETE FROM history" + preds.where(), preds.params


def build_search_query(term: str, opts: QueryOptions) -> tuple[str, list[Any]]:
    """Build the SELECT for search(); newest first, optionally limited."""
    preds = search_predicates(term, opts)
    query = SELECT_HISTORY + preds.where() + " ORDER BY timestamp DESC, rowid DESC"
    params = list(preds.params)
    if opts.limit > 0:
        query += " LIMIT ?"
        params.append(opts.limit)
    return query, params
