"""Single-connection asyncpg client with explicit transaction control.

:class:`DbClient` wraps exactly one physical connection. It never reconnects
and never retries; callers decide what to do when a statement fails.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import asyncpg

from versiongate.config import DbConnectionConfig, registry
from versiongate.errors import (
    DatabaseConnectionError,
    NoConnectionError,
    StateError,
    TooManyRowsError,
)

logger = logging.getLogger(__name__)

Param = str | int | float | bool | None
Params = Sequence[Param]

_PARAM_TYPES = (str, int, float, bool, type(None))


def _check_params(params: Params | None) -> tuple[Param, ...]:
    if params is None:
        return ()
    if isinstance(params, (str, bytes)):
        raise TypeError("params must be a sequence of values, not a string")
    checked = tuple(params)
    for index, value in enumerate(checked, start=1):
        if not isinstance(value, _PARAM_TYPES):
            raise TypeError(
                f"Unsupported placeholder type for ${index}: {type(value).__name__}"
            )
    return checked


def affected_rows(status: str | None) -> int:
    """Extract the row count from a PostgreSQL command tag like ``UPDATE 3``."""
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


class DbClient:
    """Minimal query surface over one asyncpg connection.

    Parameters
    ----------
    config:
        Either a resolved :class:`DbConnectionConfig`, or a registry prefix
        string. ``None`` uses the default registry entry (prefix ``""``).
    """

    def __init__(self, config: DbConnectionConfig | str | None = None) -> None:
        if isinstance(config, DbConnectionConfig):
            self.config = config
        else:
            self.config = registry.get(config or "")
        self._connection: asyncpg.Connection | None = None
        self._transaction: Any = None
        self._read_committed = self.config.use_read_committed_isolation

    @property
    def connection(self) -> asyncpg.Connection | None:
        return self._connection

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    async def __aenter__(self) -> DbClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Connection lifecycle ----------------------------------------------

    async def open(self) -> None:
        """Open the connection using the resolved config."""
        if self._connection is not None:
            raise StateError("open() called but a connection is already open")
        try:
            self._connection = await asyncpg.connect(**self.config.connect_kwargs())
        except Exception as exc:
            raise DatabaseConnectionError(
                f"Cannot connect to {self.config.host}:{self.config.port}/"
                f"{self.config.database_name}: {exc}"
            ) from exc
        logger.debug(
            "Connection opened to %s:%s/%s",
            self.config.host,
            self.config.port,
            self.config.database_name,
        )

    async def close(self) -> None:
        """Close the connection. Safe to call when nothing is open."""
        conn = self._connection
        if conn is None:
            return
        self._connection = None
        self._transaction = None
        await conn.close()
        logger.debug("Connection closed to %s", self.config.database_name)

    def _require_connection(self, operation: str) -> asyncpg.Connection:
        if self._connection is None:
            raise NoConnectionError(operation)
        return self._connection

    # -- Transactions --------------------------------------------------------

    async def start_transaction(self, read_committed: bool | None = None) -> None:
        """Leave autocommit and begin an explicit transaction.

        ``read_committed`` defaults to the config's isolation flag; when true
        the transaction runs at READ COMMITTED, otherwise at the server default.
        """
        conn = self._require_connection("start_transaction")
        if self._transaction is not None:
            raise StateError("start_transaction() called inside an open transaction")
        if read_committed is None:
            read_committed = self.config.use_read_committed_isolation
        if read_committed:
            transaction = conn.transaction(isolation="read_committed")
        else:
            transaction = conn.transaction()
        await transaction.start()
        self._transaction = transaction
        self._read_committed = read_committed

    async def commit(self, close_transaction: bool = True) -> None:
        """Commit pending work.

        With ``close_transaction=False`` a new transaction begins immediately at
        the same isolation level, so the session stays out of autocommit.
        """
        self._require_connection("commit")
        transaction = self._pop_transaction("commit")
        await transaction.commit()
        if not close_transaction:
            await self.start_transaction(self._read_committed)

    async def rollback(self, close_transaction: bool = True) -> None:
        """Roll back pending work; same autocommit contract as :meth:`commit`."""
        self._require_connection("rollback")
        transaction = self._pop_transaction("rollback")
        await transaction.rollback()
        if not close_transaction:
            await self.start_transaction(self._read_committed)

    def _pop_transaction(self, operation: str) -> Any:
        transaction = self._transaction
        if transaction is None:
            raise StateError(f"{operation}() called but no transaction is open")
        self._transaction = None
        return transaction

    # -- Queries ---------------------------------------------------------------

    async def all(self, sql: str, params: Params | None = None) -> list[asyncpg.Record]:
        """Return every row produced by *sql*."""
        conn = self._require_connection("all")
        return await conn.fetch(sql, *_check_params(params))

    async def get(self, sql: str, params: Params | None = None) -> asyncpg.Record | None:
        """Return the single row produced by *sql*, or None.

        Raises TooManyRowsError when more than one row comes back.
        """
        conn = self._require_connection("get")
        rows = await conn.fetch(sql, *_check_params(params))
        if len(rows) > 1:
            raise TooManyRowsError(len(rows))
        return rows[0] if rows else None

    async def insert(self, sql: str, params: Params | None = None) -> Any:
        """Run an INSERT.

        Returns the first column of the first returned row when the statement
        has a ``RETURNING`` clause, otherwise the affected-row count.
        """
        conn = self._require_connection("insert")
        statement = await conn.prepare(sql)
        rows = await statement.fetch(*_check_params(params))
        if rows and len(rows[0]) > 0 and rows[0][0] is not None:
            return rows[0][0]
        return affected_rows(statement.get_statusmsg())

    async def update(self, sql: str, params: Params | None = None) -> int:
        """Run an UPDATE and return the affected-row count."""
        conn = self._require_connection("update")
        return affected_rows(await conn.execute(sql, *_check_params(params)))

    async def delete(self, sql: str, params: Params | None = None) -> int:
        """Run a DELETE and return the affected-row count."""
        conn = self._require_connection("delete")
        return affected_rows(await conn.execute(sql, *_check_params(params)))

    async def run(self, sql: str, params: Params | None = None) -> str:
        """Run any statement and return the raw command status."""
        conn = self._require_connection("run")
        return await conn.execute(sql, *_check_params(params))
