"""Schema version orchestration.

:class:`UpgradeManager` brings a database schema to a target version exactly
once, even when several processes start at the same time. The current
version lives in a single-row table (``_version`` plus an optional suffix).

Protocol for one attempt:

1. Open a connection and read the version row ``FOR UPDATE`` inside a
   transaction. Concurrent callers queue on the row lock.
2. Row equals the target: roll back, nothing to do.
3. Row is negative: another process is initializing, fail.
4. Table is missing: create it and seed ``-1`` inside a transaction. A
   concurrent creator makes this fail with a duplicate-object error; the
   attempt is abandoned and retried after a fixed delay.
5. Otherwise run ``on_init`` (fresh table) or ``on_upgrade`` (older schema),
   then write the target version and commit.

The primary connection is closed on every exit path.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import asyncpg
from opentelemetry import trace

from versiongate.config import DbConnectionConfig, registry
from versiongate.db import DbClient
from versiongate.errors import (
    ConfigError,
    DowngradeNotSupportedError,
    SchemaInitializationInProgressError,
    VersionTableEmptyError,
    VersionTableRaceExhaustedError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("versiongate")

DEFAULT_VERSION_TABLE = "_version"
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_SECONDS = 2.0

# Stored value while the table exists but the schema is not initialized yet.
INITIALIZING_VERSION = -1

_SUFFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]*$")

# Errors PostgreSQL raises when two sessions CREATE the same table at once:
# 42P07 once the other table is committed, 23505 on pg_type while both race.
_CREATE_RACE_ERRORS = (asyncpg.DuplicateTableError, asyncpg.UniqueViolationError)

InitCallback = Callable[[DbClient], Awaitable[None]]
UpgradeCallback = Callable[[DbClient, int], Awaitable[None]]
ClientFactory = Callable[[DbConnectionConfig], DbClient]


class DiscoveryState(enum.StrEnum):
    """Outcome of the locked read of the version row."""

    TABLE_ABSENT = "table_absent"
    ROW_LOCKED_EQUAL = "row_locked_equal"
    ROW_LOCKED_BEHIND = "row_locked_behind"
    ROW_NEGATIVE = "row_negative"


@dataclass(frozen=True)
class Discovery:
    state: DiscoveryState
    value: int | None = None


@dataclass(frozen=True)
class CheckResult:
    """What :meth:`UpgradeManager.check_db` did.

    Attributes
    ----------
    action:
        ``"noop"``, ``"init"`` or ``"upgrade"``.
    from_version:
        Version found in the database (0 for a freshly created table).
    to_version:
        Version stored when the call returned.
    attempts:
        Number of attempts, greater than 1 when a creation race was lost.
    """

    action: str
    from_version: int
    to_version: int
    attempts: int = 1


def version_table_name(suffix: str = "") -> str:
    """Return the version table name for *suffix*, validating it as an identifier."""
    if _SUFFIX_PATTERN.fullmatch(suffix) is None:
        raise ConfigError(f"Invalid version table suffix: {suffix!r}")
    return DEFAULT_VERSION_TABLE + suffix


class UpgradeManager:
    """Race-safe schema initializer/upgrader for one database."""

    def __init__(
        self,
        config: DbConnectionConfig | str | None = None,
        *,
        version_table_suffix: str | None = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        client_factory: ClientFactory = DbClient,
    ) -> None:
        if isinstance(config, DbConnectionConfig):
            self.config = config
        else:
            self.config = registry.get(config or "")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        if version_table_suffix is None:
            version_table_suffix = self.config.version_table_suffix
        self.version_table = version_table_name(version_table_suffix)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._client_factory = client_factory

    async def check_db(
        self,
        target_version: int,
        on_init: InitCallback,
        on_upgrade: UpgradeCallback,
    ) -> CheckResult:
        """Bring the schema to *target_version*.

        ``on_init(client)`` runs on a dedicated connection when the version
        table did not exist. ``on_upgrade(client, from_version)`` runs on the
        locked primary connection when the stored version is behind. The new
        version is committed only after the callback returns.
        """
        if isinstance(target_version, bool) or not isinstance(target_version, int):
            raise ValueError(f"target_version must be an int, got {target_version!r}")
        if target_version < 1:
            raise ValueError(f"target_version must be positive, got {target_version}")

        with tracer.start_as_current_span("versiongate.check_db") as span:
            span.set_attribute("versiongate.version_table", self.version_table)
            span.set_attribute("versiongate.target_version", target_version)
            try:
                result = await self._check_db(target_version, on_init, on_upgrade)
            except Exception as exc:
                logger.exception(
                    "FATAL: checkDb failed for %s (target version %s): %s",
                    self.version_table,
                    target_version,
                    exc,
                )
                raise
            span.set_attribute("versiongate.action", result.action)
            span.set_attribute("versiongate.from_version", result.from_version)
            span.set_attribute("versiongate.attempts", result.attempts)
            return result

    async def current_version(self) -> int | None:
        """Read the stored version without locking; None when the table is missing."""
        client = self._client_factory(self.config)
        await client.open()
        try:
            row = await client.get(f"SELECT value FROM {self.version_table}")
        except asyncpg.UndefinedTableError:
            return None
        finally:
            await client.close()
        if row is None:
            return None
        return row["value"]

    # -- State machine -------------------------------------------------------

    async def _check_db(
        self,
        target_version: int,
        on_init: InitCallback,
        on_upgrade: UpgradeCallback,
    ) -> CheckResult:
        for attempt in range(1, self.retry_attempts + 1):
            result = await self._attempt(target_version, on_init, on_upgrade, attempt)
            if result is not None:
                return result
            if attempt < self.retry_attempts:
                logger.warning(
                    "Lost race creating %s, retrying in %.1fs (attempt %d/%d)",
                    self.version_table,
                    self.retry_delay,
                    attempt,
                    self.retry_attempts,
                )
                await asyncio.sleep(self.retry_delay)
        raise VersionTableRaceExhaustedError(self.version_table, self.retry_attempts)

    async def _attempt(
        self,
        target_version: int,
        on_init: InitCallback,
        on_upgrade: UpgradeCallback,
        attempt: int,
    ) -> CheckResult | None:
        """Run one pass of the protocol. Returns None when the creation race was lost."""
        client = self._client_factory(self.config)
        await client.open()
        try:
            discovery = await self._discover(client, target_version)
            if discovery.state is DiscoveryState.ROW_LOCKED_EQUAL:
                logger.info("Check db: same version %s", target_version)
                return CheckResult("noop", target_version, target_version, attempt)
            if discovery.state is DiscoveryState.ROW_NEGATIVE:
                logger.warning(
                    "Db in initialization (%s = %s), exiting",
                    self.version_table,
                    discovery.value,
                )
                raise SchemaInitializationInProgressError(self.version_table, discovery.value)
            if discovery.state is DiscoveryState.TABLE_ABSENT:
                if not await self._create_version_table(client):
                    return None
                current_version = 0
            else:
                current_version = discovery.value

            logger.info(
                "Check db: currentVersion %s targetVersion %s", current_version, target_version
            )
            action = await self._apply(
                client, current_version, target_version, on_init, on_upgrade
            )
            return CheckResult(action, current_version, target_version, attempt)
        finally:
            await client.close()

    async def _discover(self, client: DbClient, target_version: int) -> Discovery:
        """Read the version row with a row lock.

        The transaction stays open (lock held) only for ROW_LOCKED_BEHIND.
        """
        await client.start_transaction()
        try:
            row = await client.get(f"SELECT value FROM {self.version_table} FOR UPDATE")
        except asyncpg.UndefinedTableError:
            await client.rollback()
            logger.debug("Version table %s does not exist", self.version_table)
            return Discovery(DiscoveryState.TABLE_ABSENT)
        except Exception:
            await client.rollback()
            raise

        if row is None:
            await client.rollback()
            raise VersionTableEmptyError(f"Version table {self.version_table} has no row")

        value = row["value"]
        logger.debug("Versions: %s vs %s", value, target_version)
        if value == target_version:
            logger.debug("versions are equal, rollback")
            await client.rollback()
            return Discovery(DiscoveryState.ROW_LOCKED_EQUAL, value)
        if value < 0:
            await client.rollback()
            return Discovery(DiscoveryState.ROW_NEGATIVE, value)
        return Discovery(DiscoveryState.ROW_LOCKED_BEHIND, value)

    async def _create_version_table(self, client: DbClient) -> bool:
        """Create and seed the version table, keeping the transaction open.

        Returns False when another process created the table concurrently.
        """
        await client.start_transaction()
        try:
            await client.run(f"CREATE TABLE {self.version_table} (value INTEGER PRIMARY KEY)")
            await client.insert(
                f"INSERT INTO {self.version_table} (value) VALUES ($1)", [INITIALIZING_VERSION]
            )
            await client.get(f"SELECT value FROM {self.version_table} FOR UPDATE")
        except _CREATE_RACE_ERRORS as exc:
            await client.rollback()
            logger.warning(
                "Version table %s was created concurrently: [%s] %s",
                self.version_table,
                exc.sqlstate,
                exc,
            )
            return False
        except asyncpg.PostgresError as exc:
            await client.rollback()
            logger.warning(
                "Unable to create %s table: [%s] %s", self.version_table, exc.sqlstate, exc
            )
            raise
        except Exception:
            await client.rollback()
            raise
        logger.info("Created version table %s", self.version_table)
        return True

    async def _apply(
        self,
        client: DbClient,
        current_version: int,
        target_version: int,
        on_init: InitCallback,
        on_upgrade: UpgradeCallback,
    ) -> str:
        try:
            if current_version == 0:
                await self._init_schema(on_init)
                action = "init"
            elif current_version < target_version:
                await on_upgrade(client, current_version)
                action = "upgrade"
            else:
                raise DowngradeNotSupportedError(current_version, target_version)
            await self._update_version(client, target_version)
        except Exception:
            await self._rollback_after_failure(client)
            raise

        if action == "init":
            logger.info("Db created at version %s", target_version)
        else:
            logger.info("Db updated from %s to %s", current_version, target_version)
        return action

    async def _init_schema(self, on_init: InitCallback) -> None:
        init_client = self._client_factory(self.config)
        await init_client.open()
        try:
            await on_init(init_client)
        finally:
            await init_client.close()

    async def _update_version(self, client: DbClient, target_version: int) -> None:
        await client.update(f"UPDATE {self.version_table} SET value = $1", [target_version])
        await client.commit()

    async def _rollback_after_failure(self, client: DbClient) -> None:
        if not (client.is_open and client.in_transaction):
            return
        try:
            await client.rollback()
        except Exception as exc:
            # The connection is closed next, which discards the transaction anyway.
            logger.warning("Rollback of %s failed: %s", self.version_table, exc)
