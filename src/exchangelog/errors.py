"""
Exception hierarchy for exchangelog.

All exchangelog exceptions inherit from ExchangeLogError, allowing callers to
catch every library-specific failure with a single except clause.

Exception Categories:
    - HistoryError: The store contract was violated (missing entry, bad key,
      closed store, malformed options)
    - StorageError: The SQLite engine failed underneath an operation
    - ConfigError: A configuration file could not be loaded

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (operation, key) where applicable
    - Errors are designed to be both human-readable and machine-parseable
    - None of them are fatal; callers surface them up their own call chain
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# History contract errors: 1xxx
ERROR_NOT_FOUND = 1001
ERROR_INVALID_ID = 1002
ERROR_STORE_CLOSED = 1003
ERROR_INVALID_OPTION = 1004

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003
ERROR_STORAGE_DUPLICATE_ID = 5004

# Configuration errors: 6xxx
ERROR_CONFIG_INVALID = 6001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class ExchangeLogError(Exception):
    """
    Base exception for all exchangelog errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# History Contract Errors
# =============================================================================


@dataclass
class HistoryError(ExchangeLogError):
    """
    Base class for errors raised by the store contract itself.

    These are raised before or instead of touching the database, and
    compare by type: ``except NotFoundError`` is the Python spelling of
    checking a sentinel.

    Attributes:
        operation: The store operation that raised (e.g., "get", "update")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class NotFoundError(HistoryError):
    """Raised when an entry or cache row with the given key does not exist."""

    key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"History entry not found: {self.key}"
        if self.code == 0:
            self.code = ERROR_NOT_FOUND
        super().__post_init__()
        self.context["key"] = self.key


@dataclass
class InvalidIDError(HistoryError):
    """Raised when an operation is given a structurally invalid key."""

    key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid history entry ID: {self.key!r}"
        if self.code == 0:
            self.code = ERROR_INVALID_ID
        if not self.suggestion:
            self.suggestion = "Pass the non-empty ID returned by add()"
        super().__post_init__()
        self.context["key"] = self.key


@dataclass
class StoreClosedError(HistoryError):
    """Raised when an operation is attempted after close()."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "History store is closed"
        if self.code == 0:
            self.code = ERROR_STORE_CLOSED
        if not self.suggestion:
            self.suggestion = "Open a new store; closing is permanent"
        super().__post_init__()


@dataclass
class InvalidOptionError(HistoryError):
    """Raised when query options name an unknown sort column or order."""

    option: str = ""
    value: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid query option {self.option}: {self.value!r}"
        if self.code == 0:
            self.code = ERROR_INVALID_OPTION
        super().__post_init__()
        self.context.update({
            "option": self.option,
            "value": self.value,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(ExchangeLogError):
    """
    Base class for storage/database errors.

    These wrap sqlite3 failures with the operation that was running.

    Attributes:
        operation: The operation that failed (e.g., "add", "prune")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the database cannot be opened or initialized."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed ({self.operation}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read fails or a stored row cannot be decoded."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed ({self.operation}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class DuplicateIDError(StorageWriteError):
    """Raised when add() is given an explicit ID that is already stored."""

    entry_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"History entry already exists: {self.entry_id}"
        if self.code == 0:
            self.code = ERROR_STORAGE_DUPLICATE_ID
        if not self.suggestion:
            self.suggestion = "Leave Entry.id empty to have one generated, or use update()"
        super().__post_init__()
        self.context["entry_id"] = self.entry_id


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(ExchangeLogError):
    """Raised when a configuration file is missing fields or malformed."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })
