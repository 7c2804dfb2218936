"""Shared test fixtures for the versiongate test suite.

Unit tests run against :class:`FakeDatabase` (see ``_fake_pg.py``), patched in
place of ``asyncpg.connect``. Integration tests share one PostgreSQL
testcontainer per session; every test provisions its own database with a
random name so version tables never leak between tests.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import asyncpg
import pytest
from _fake_pg import FakeDatabase

from versiongate.config import DbConnectionConfig, registry

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(autouse=True)
def _reset_config_registry() -> Iterator[None]:
    """Keep the process-wide config registry from leaking between tests."""
    registry.reset()
    yield
    registry.reset()


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDatabase:
    """A FakeDatabase wired in as ``asyncpg.connect``."""
    db = FakeDatabase()
    monkeypatch.setattr(asyncpg, "connect", db.connect)
    return db


@pytest.fixture
def db_config() -> DbConnectionConfig:
    """Connection config pointing nowhere; used together with ``fake_db``."""
    return DbConnectionConfig(user="app", password="secret", database="appdb")


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_db_config(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[DbConnectionConfig]]:
    """Create a fresh database and return a config that points at it.

    Tests should use this as:
        async with provisioned_db_config() as config:
            ...
    """

    @asynccontextmanager
    async def _provision(*, read_committed: bool = True) -> AsyncIterator[DbConnectionConfig]:
        db_name = _unique_test_db_name()
        base = DbConnectionConfig(
            user=postgres_container.username,
            password=postgres_container.password,
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            database="postgres",
        )
        admin = await asyncpg.connect(**base.connect_kwargs())
        try:
            await admin.execute(f'CREATE DATABASE "{db_name}"')
        finally:
            await admin.close()
        try:
            yield base.with_options(
                database=db_name, use_read_committed_isolation=read_committed
            )
        finally:
            admin = await asyncpg.connect(**base.connect_kwargs())
            try:
                await admin.execute(f'DROP DATABASE IF EXISTS "{db_name}" WITH (FORCE)')
            finally:
                await admin.close()

    return _provision
