"""versiongate: race-safe schema version tracking for PostgreSQL."""

from versiongate.config import ConnectionConfigRegistry, DbConnectionConfig, db_config_from_env
from versiongate.db import DbClient
from versiongate.errors import (
    ConfigError,
    DatabaseConnectionError,
    DowngradeNotSupportedError,
    LogicError,
    NoConnectionError,
    SchemaInitializationInProgressError,
    StateError,
    TooManyRowsError,
    VersionGateError,
    VersionTableEmptyError,
    VersionTableRaceError,
    VersionTableRaceExhaustedError,
)
from versiongate.upgrade import CheckResult, UpgradeManager

__all__ = [
    "CheckResult",
    "ConfigError",
    "ConnectionConfigRegistry",
    "DatabaseConnectionError",
    "DbClient",
    "DbConnectionConfig",
    "DowngradeNotSupportedError",
    "LogicError",
    "NoConnectionError",
    "SchemaInitializationInProgressError",
    "StateError",
    "TooManyRowsError",
    "UpgradeManager",
    "VersionGateError",
    "VersionTableEmptyError",
    "VersionTableRaceError",
    "VersionTableRaceExhaustedError",
    "db_config_from_env",
]

__version__ = "0.1.0"
