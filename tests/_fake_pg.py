"""In-memory stand-in for asyncpg connections, used by the unit tests.

Only understands the handful of statements versiongate issues against its
version table; anything else is recorded in ``FakeDatabase.executed`` and
acknowledged with ``"OK"``. Transactions keep a private copy of every table
they touch and publish it on commit.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import asyncpg

_SELECT_RE = re.compile(r"^SELECT value FROM (\w+)( FOR UPDATE)?$", re.IGNORECASE)
_CREATE_RE = re.compile(r"^CREATE TABLE (\w+) \(value INTEGER PRIMARY KEY\)$", re.IGNORECASE)
_INSERT_RE = re.compile(r"^INSERT INTO (\w+) \(value\) VALUES \(\$1\)$", re.IGNORECASE)
_UPDATE_RE = re.compile(r"^UPDATE (\w+) SET value = \$1$", re.IGNORECASE)

_ABSENT = object()


class FakeRecord(dict):
    """dict that also supports positional access, like asyncpg.Record."""

    def __getitem__(self, key: Any) -> Any:
        if isinstance(key, int):
            return list(self.values())[key]
        return super().__getitem__(key)


class FakeDatabase:
    """Shared server state for every FakeConnection it hands out."""

    def __init__(self) -> None:
        self.tables: dict[str, list[int]] = {}
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.connections: list[FakeConnection] = []
        self.connect_kwargs: list[dict[str, Any]] = []
        # Exceptions raised (in order) by the next CREATE TABLE statements.
        self.create_errors: list[BaseException] = []
        # Called before a CREATE TABLE error is raised, e.g. to publish the
        # table a concurrent winner would have committed.
        self.on_create_error: Callable[[FakeDatabase], None] | None = None
        self.connect_error: BaseException | None = None
        # Canned results for statements outside the version-table protocol.
        self.canned: dict[str, Any] = {}

    def seed(self, table: str, *values: int) -> None:
        self.tables[table] = list(values)

    def value(self, table: str) -> int | list[int] | None:
        rows = self.tables.get(table)
        if rows is None:
            return None
        return rows[0] if len(rows) == 1 else list(rows)

    @property
    def open_connections(self) -> list[FakeConnection]:
        return [conn for conn in self.connections if not conn.closed]

    async def connect(self, **kwargs: Any) -> FakeConnection:
        self.connect_kwargs.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn


class FakeTransaction:
    def __init__(self, conn: FakeConnection, isolation: str | None) -> None:
        self.conn = conn
        self.isolation = isolation

    async def start(self) -> None:
        if self.conn.working is not None:
            raise asyncpg.InterfaceError("cannot start a nested transaction")
        self.conn.working = {}
        self.conn.isolations.append(self.isolation)

    async def commit(self) -> None:
        working = self.conn.working or {}
        for table, rows in working.items():
            if rows is _ABSENT:
                self.conn.db.tables.pop(table, None)
            else:
                self.conn.db.tables[table] = rows
        self.conn.working = None
        self.conn.commits += 1

    async def rollback(self) -> None:
        self.conn.working = None
        self.conn.rollbacks += 1


class FakePreparedStatement:
    def __init__(self, conn: FakeConnection, sql: str) -> None:
        self.conn = conn
        self.sql = sql
        self._status = ""

    async def fetch(self, *args: Any) -> list[FakeRecord]:
        rows, self._status = self.conn._dispatch(self.sql, args)
        return rows

    def get_statusmsg(self) -> str:
        return self._status


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.closed = False
        self.working: dict[str, Any] | None = None
        self.isolations: list[str | None] = []
        self.commits = 0
        self.rollbacks = 0

    # -- asyncpg.Connection surface ------------------------------------------

    def transaction(self, *, isolation: str | None = None) -> FakeTransaction:
        return FakeTransaction(self, isolation)

    async def fetch(self, sql: str, *args: Any) -> list[FakeRecord]:
        return self._dispatch(sql, args)[0]

    async def execute(self, sql: str, *args: Any) -> str:
        return self._dispatch(sql, args)[1]

    async def prepare(self, sql: str) -> FakePreparedStatement:
        return FakePreparedStatement(self, sql)

    async def close(self) -> None:
        self.working = None
        self.closed = True

    # -- statement handling ---------------------------------------------------

    def _read(self, table: str) -> list[int] | None:
        if self.working is not None and table in self.working:
            rows = self.working[table]
            return None if rows is _ABSENT else rows
        return self.db.tables.get(table)

    def _write(self, table: str, rows: list[int]) -> None:
        if self.working is not None:
            self.working[table] = rows
        else:
            self.db.tables[table] = rows

    def _dispatch(self, sql: str, args: tuple[Any, ...]) -> tuple[list[FakeRecord], str]:
        if self.closed:
            raise asyncpg.InterfaceError("connection is closed")
        statement = " ".join(sql.split())

        if match := _SELECT_RE.match(statement):
            rows = self._read(match.group(1))
            if rows is None:
                raise asyncpg.UndefinedTableError(f'relation "{match.group(1)}" does not exist')
            return [FakeRecord(value=value) for value in rows], f"SELECT {len(rows)}"

        if match := _CREATE_RE.match(statement):
            table = match.group(1)
            if self.db.create_errors:
                if self.db.on_create_error is not None:
                    self.db.on_create_error(self.db)
                raise self.db.create_errors.pop(0)
            if self._read(table) is not None:
                raise asyncpg.DuplicateTableError(f'relation "{table}" already exists')
            self._write(table, [])
            return [], "CREATE TABLE"

        if match := _INSERT_RE.match(statement):
            table = match.group(1)
            rows = list(self._read(table) or [])
            rows.append(args[0])
            self._write(table, rows)
            return [], "INSERT 0 1"

        if match := _UPDATE_RE.match(statement):
            table = match.group(1)
            rows = self._read(table)
            if rows is None:
                raise asyncpg.UndefinedTableError(f'relation "{table}" does not exist')
            self._write(table, [args[0]] * len(rows))
            return [], f"UPDATE {len(rows)}"

        self.db.executed.append((statement, args))
        canned = self.db.canned.get(statement)
        if isinstance(canned, BaseException):
            raise canned
        if canned is not None:
            return canned
        return [], "OK"
