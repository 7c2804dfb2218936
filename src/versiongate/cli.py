"""CLI for versiongate: inspect connection config and the stored schema version."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import asyncpg
import click

from versiongate import __version__
from versiongate.config import db_config_from_env
from versiongate.errors import VersionGateError
from versiongate.logging import configure_logging
from versiongate.upgrade import UpgradeManager

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default="WARNING", show_default=True, help="Root log level")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Log output format",
)
def cli(log_level: str, log_format: str) -> None:
    """versiongate: race-safe schema version tracking for PostgreSQL."""
    configure_logging(level=log_level, fmt=log_format)


@cli.command()
@click.option("--prefix", default="", help="Config prefix, e.g. AUDIT_ for VG_AUDIT_DB_*")
@click.option("--suffix", default=None, help="Version table suffix (overrides env)")
def status(prefix: str, suffix: str | None) -> None:
    """Print the schema version stored in the version table."""
    try:
        config = db_config_from_env(prefix)
        manager = UpgradeManager(config, version_table_suffix=suffix)
        version = asyncio.run(manager.current_version())
    except (VersionGateError, asyncpg.PostgresError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if version is None:
        click.echo(f"{manager.version_table}: not initialized")
        sys.exit(2)
    click.echo(f"{manager.version_table}: {version}")


@cli.command("config")
@click.option("--prefix", default="", help="Config prefix, e.g. AUDIT_ for VG_AUDIT_DB_*")
def config_cmd(prefix: str) -> None:
    """Print the resolved connection config with the password masked."""
    try:
        config = db_config_from_env(prefix)
    except VersionGateError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps(config.redacted(), indent=2, sort_keys=True, default=str))


def main() -> None:
    cli()
