"""Connection configuration for versiongate.

Connection parameters are read from ``VG_{prefix}DB_*`` environment variables
into an explicit :class:`DbConnectionConfig`. Resolved configs are memoized per
prefix in a :class:`ConnectionConfigRegistry` so several named databases can be
configured side by side::

    VG_DB_USER=app            -> prefix ""
    VG_AUDIT_DB_USER=audit    -> prefix "AUDIT_"
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from versiongate.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_NAMESPACE = "VG_"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5432

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}
_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]*$")


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def _env_name(prefix: str, key: str) -> str:
    return f"{ENV_NAMESPACE}{prefix}DB_{key}"


def env_bool(name: str, default: bool = False) -> bool:
    """Parse a boolean environment variable.

    Raises ConfigError for values that are neither truthy nor falsy.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_json_object(name: str) -> dict[str, Any]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{name} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a JSON object, got {type(value).__name__}")
    return value


def read_password(password_file: str, password: str) -> str:
    """Return the password, preferring the contents of *password_file* when set."""
    if password_file:
        try:
            return Path(password_file).read_text(encoding="utf-8").rstrip("\r\n")
        except OSError as exc:
            raise ConfigError(f"Cannot read password file {password_file}: {exc}") from exc
    return password


@dataclass(frozen=True)
class DbConnectionConfig:
    """Resolved connection parameters for one PostgreSQL database.

    ``conn_options`` holds extra keyword arguments for ``asyncpg.connect``;
    they are applied last and override the named fields.
    """

    user: str
    password: str = field(default="", repr=False)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    database: str | None = None
    ssl: str | None = None
    conn_options: dict[str, Any] = field(default_factory=dict)
    use_read_committed_isolation: bool = False
    version_table_suffix: str = ""

    @property
    def database_name(self) -> str:
        return self.database or self.user

    def connect_kwargs(self) -> dict[str, Any]:
        """Build the keyword arguments passed to ``asyncpg.connect``."""
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database_name,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        kwargs.update(self.conn_options)
        return kwargs

    def redacted(self) -> dict[str, Any]:
        """Return a loggable view of the config with secrets masked."""
        kwargs = self.connect_kwargs()
        if kwargs.get("password"):
            kwargs["password"] = "***"
        kwargs["use_read_committed_isolation"] = self.use_read_committed_isolation
        kwargs["version_table_suffix"] = self.version_table_suffix
        return kwargs

    def with_options(self, **overrides: Any) -> DbConnectionConfig:
        return replace(self, **overrides)


def db_config_from_env(prefix: str = "") -> DbConnectionConfig:
    """Read DB connection params for *prefix* from environment variables."""
    if _PREFIX_PATTERN.fullmatch(prefix) is None:
        raise ConfigError(f"Invalid config prefix: {prefix!r}")

    password = os.environ.get(_env_name(prefix, "PASSWORD"), "")
    password_file = os.environ.get(_env_name(prefix, "PASSWORD_FILE"), "")
    if not password and not password_file:
        raise ConfigError(
            f"{_env_name(prefix, 'PASSWORD')} or {_env_name(prefix, 'PASSWORD_FILE')} "
            "env is required"
        )

    user = os.environ.get(_env_name(prefix, "USER"), "").strip()
    if not user:
        raise ConfigError(f"{_env_name(prefix, 'USER')} env is required")

    return DbConnectionConfig(
        user=user,
        password=read_password(password_file, password),
        host=os.environ.get(_env_name(prefix, "HOST"), DEFAULT_HOST),
        port=_env_int(_env_name(prefix, "PORT"), DEFAULT_PORT),
        database=os.environ.get(_env_name(prefix, "NAME")) or user,
        ssl=_normalize_ssl_mode(os.environ.get(_env_name(prefix, "SSLMODE"))),
        conn_options=_env_json_object(_env_name(prefix, "CONN_OPTIONS")),
        use_read_committed_isolation=env_bool(
            f"{ENV_NAMESPACE}DB_USE_READ_COMMITTED_ISOLATION", False
        ),
        version_table_suffix=os.environ.get(f"{ENV_NAMESPACE}DB_VERSION_TABLE_SUFFIX", ""),
    )


class ConnectionConfigRegistry:
    """Prefix-keyed cache of resolved connection configs.

    Configs are resolved from the environment on first use. ``set()`` pins a
    config explicitly (tests, embedded callers); ``reset()`` drops everything.
    """

    def __init__(self) -> None:
        self._configs: dict[str, DbConnectionConfig] = {}

    def get(self, prefix: str = "") -> DbConnectionConfig:
        config = self._configs.get(prefix)
        if config is None:
            config = db_config_from_env(prefix)
            self._configs[prefix] = config
        return config

    def set(self, prefix: str, config: DbConnectionConfig) -> None:
        self._configs[prefix] = config

    def reset(self) -> None:
        self._configs.clear()

    def __contains__(self, prefix: object) -> bool:
        return prefix in self._configs


# Process-wide default registry used when DbClient is given a prefix.
registry = ConnectionConfigRegistry()
