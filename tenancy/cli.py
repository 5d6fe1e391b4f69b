"""CLI for the tenant lifecycle jobs.

Exit codes: 0 when every unit succeeded, 1 when at least one shop failed,
2 when the job could not run at all (configuration, master database, admin
mode).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import NoReturn

import click
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tenancy.core.config import Settings, get_settings
from tenancy.core.database import open_engine, ping
from tenancy.core.exceptions import AdminModeRequired, TenancyError
from tenancy.services.provisioning import PostgresProvisioningBackend, ProvisioningBackend
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.tenant_store import TenantStoreFactory, describe_error
from tenancy.workers.migrate import run_migrate
from tenancy.workers.provision import run_deprovision, run_provision
from tenancy.workers.report import JobReport
from tenancy.workers.validate import run_validate

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s: %(name)s: %(message)s"


def _fatal(message: str) -> NoReturn:
    click.echo(f"FATAL: {message}", err=True)
    sys.exit(2)


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as exc:
        _fatal(f"invalid configuration: {exc}")
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    return settings


def _tenant_stores(settings: Settings) -> TenantStoreFactory:
    return TenantStoreFactory.from_settings(settings)


@asynccontextmanager
async def _admin_backend(settings: Settings) -> AsyncIterator[ProvisioningBackend]:
    if not settings.admin_mode:
        raise AdminModeRequired()
    async with open_engine(settings.require_admin_database_url()) as admin_engine:
        await ping(admin_engine)
        yield PostgresProvisioningBackend(admin_engine)


def _execute(job: Awaitable[JobReport]) -> NoReturn:
    """Run a job to completion, print its summary and exit with its status."""
    try:
        report = asyncio.run(job)
    except TenancyError as exc:
        _fatal(str(exc))
    except (SQLAlchemyError, OSError) as exc:
        logger.exception("Job aborted")
        _fatal(describe_error(exc))

    for line in report.summary_lines():
        click.echo(line)
    sys.exit(report.exit_code)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Per-shop database lifecycle: provision, migrate, validate, off-board."""


@cli.command()
def provision() -> None:
    """Create a database and role for every shop without one (ADMIN_MODE)."""
    settings = _load_settings()

    async def _job() -> JobReport:
        async with open_engine(settings.database_url) as master_engine:
            async with _admin_backend(settings) as backend:
                return await run_provision(
                    settings,
                    master_engine,
                    backend,
                    stores=_tenant_stores(settings),
                    echo=click.echo,
                )

    _execute(_job())


@cli.command()
@click.option("--batch-size", type=click.IntRange(min=1), help="Rows per batch (BATCH_SIZE)")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    help="Shops migrated in parallel (MIGRATION_CONCURRENCY)",
)
@click.option("--shop", "shop_ids", type=int, multiple=True, help="Only migrate these shops")
def migrate(batch_size: int | None, concurrency: int | None, shop_ids: tuple[int, ...]) -> None:
    """Copy every registered shop's rows into its tenant database. Resumable."""
    settings = _load_settings()

    async def _job() -> JobReport:
        async with open_engine(settings.database_url) as master_engine:
            return await run_migrate(
                settings,
                master_engine,
                stores=_tenant_stores(settings),
                batch_size=batch_size,
                concurrency=concurrency,
                shop_ids=list(shop_ids) or None,
                echo=click.echo,
            )

    _execute(_job())


@cli.command()
@click.option("--shop", "shop_ids", type=int, multiple=True, help="Only validate these shops")
def validate(shop_ids: tuple[int, ...]) -> None:
    """Compare row counts and integrity between master and tenant databases."""
    settings = _load_settings()

    async def _job() -> JobReport:
        async with open_engine(settings.database_url) as master_engine:
            return await run_validate(
                settings,
                master_engine,
                stores=_tenant_stores(settings),
                shop_ids=list(shop_ids) or None,
                echo=click.echo,
            )

    _execute(_job())


@cli.command()
@click.argument("shop_id", type=int)
@click.confirmation_option(
    prompt="This permanently deletes the shop's tenant database. Continue?"
)
def deprovision(shop_id: int) -> None:
    """Drop a shop's database and role and forget its credentials (ADMIN_MODE)."""
    settings = _load_settings()

    async def _job() -> JobReport:
        async with open_engine(settings.database_url) as master_engine:
            async with _admin_backend(settings) as backend:
                return await run_deprovision(
                    settings,
                    master_engine,
                    backend,
                    shop_id,
                    stores=_tenant_stores(settings),
                    echo=click.echo,
                )

    _execute(_job())


@cli.command("bootstrap-secrets")
def bootstrap_secrets() -> None:
    """Register credentials from TENANT_<ID>_URL environment variables."""
    settings = _load_settings()

    async def _job() -> JobReport:
        report = JobReport("bootstrap-secrets", echo=click.echo)
        async with open_engine(settings.database_url) as master_engine:
            registry = ConnectionRegistry.from_settings(master_engine, settings)
            result = await registry.bootstrap_from_environment()
        report.processed += result.loaded
        report.succeeded += result.loaded
        for shop_id, error in result.errors:
            unit = f"shop {shop_id}"
            report.failure(unit, f"{unit}: FAILED ({error})", error)
        return report

    _execute(_job())


@cli.command()
def connections() -> None:
    """Check that every registry record decrypts and is complete."""
    settings = _load_settings()

    async def _job() -> JobReport:
        report = JobReport("connections", echo=click.echo)
        async with open_engine(settings.database_url) as master_engine:
            registry = ConnectionRegistry.from_settings(master_engine, settings)
            checks = await registry.validate_all_connections()
        for check in checks:
            unit = f"shop {check.shop_id}"
            if check.is_valid:
                report.success(f"{unit}: ok")
            else:
                report.failure(unit, f"{unit}: INVALID ({check.error})", check.error or "")
        return report

    _execute(_job())
