"""ARQ worker entrypoint.

Only the migrate and validate jobs are exposed here; provisioning needs
superuser credentials and stays a CLI-only, admin-container operation.
"""

import asyncio
import logging

from arq.connections import RedisSettings

from tenancy.core.config import get_settings
from tenancy.core.database import init_bookkeeping, open_engine
from tenancy.workers.migrate import run_migrate
from tenancy.workers.validate import run_validate

logger = logging.getLogger(__name__)


def _redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    return RedisSettings.from_dsn(get_settings().redis_url)


async def migrate_tenants(
    ctx: dict,
    batch_size: int | None = None,
    shop_ids: list[int] | None = None,
) -> dict:
    """ARQ task: run the migrate job over all (or the given) shops."""
    settings = get_settings()
    async with open_engine(settings.database_url) as master_engine:
        report = await run_migrate(
            settings, master_engine, batch_size=batch_size, shop_ids=shop_ids
        )
    logger.info("migrate_tenants finished: %d failed", report.failed)
    return report.as_dict()


async def validate_tenants(ctx: dict, shop_ids: list[int] | None = None) -> dict:
    """ARQ task: run the validate job over all (or the given) shops."""
    settings = get_settings()
    async with open_engine(settings.database_url) as master_engine:
        report = await run_validate(settings, master_engine, shop_ids=shop_ids)
    logger.info("validate_tenants finished: %d failed", report.failed)
    return report.as_dict()


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    settings = get_settings()
    settings.require_encryption_key()
    async with open_engine(settings.database_url) as engine:
        await init_bookkeeping(engine)


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [migrate_tenants, validate_tenants]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 1
    job_timeout = 6 * 60 * 60  # a full sweep over every shop


if __name__ == "__main__":
    from arq import run_worker
    asyncio.run(run_worker(WorkerSettings))  # type: ignore[arg-type]
