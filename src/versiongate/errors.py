"""Exception hierarchy for versiongate.

Everything raised on purpose by this package derives from
:class:`VersionGateError`. Exceptions raised by caller-supplied schema
callbacks are never wrapped; they reach the caller unchanged.
"""

from __future__ import annotations


class VersionGateError(Exception):
    """Base class for all versiongate errors."""


class ConfigError(VersionGateError):
    """Raised when connection configuration is missing, malformed, or invalid."""


class DatabaseConnectionError(VersionGateError, ConnectionError):
    """Raised when the database connection cannot be opened."""


class StateError(VersionGateError):
    """Raised when an operation is invoked in the wrong client state."""


class NoConnectionError(StateError):
    """Raised when a query or transaction call is made without an open connection."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation}() called but no connection available")
        self.operation = operation


class LogicError(VersionGateError):
    """Raised when the database returns data that breaks an invariant."""


class TooManyRowsError(LogicError):
    """Raised by ``get()`` when a query returns more than one row."""

    def __init__(self, row_count: int) -> None:
        super().__init__(f"get() returned more than one row ({row_count})")
        self.row_count = row_count


class VersionTableEmptyError(LogicError):
    """Raised when the version table exists but holds no row."""


class VersionTableRaceError(VersionGateError):
    """Another process created the version table first."""


class VersionTableRaceExhaustedError(VersionTableRaceError):
    """Raised when the version table creation race is lost too many times in a row."""

    def __init__(self, table: str, attempts: int) -> None:
        super().__init__(
            f"Gave up creating version table {table!r} after {attempts} lost races"
        )
        self.table = table
        self.attempts = attempts


class SchemaInitializationInProgressError(VersionGateError):
    """Raised when the stored version is negative (another process is initializing)."""

    def __init__(self, table: str, value: int) -> None:
        super().__init__(f"Db in initialization ({table}.value={value}), do not proceed")
        self.table = table
        self.value = value


class DowngradeNotSupportedError(VersionGateError):
    """Raised when the stored version is ahead of the requested target."""

    def __init__(self, current_version: int, target_version: int) -> None:
        super().__init__(
            f"Database is at version {current_version}, "
            f"downgrade to {target_version} is not supported"
        )
        self.current_version = current_version
        self.target_version = target_version
