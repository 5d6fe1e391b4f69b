"""Provision and off-board jobs. Admin containers only."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from tenancy.core.config import Settings
from tenancy.core.database import make_session_factory, ping
from tenancy.core.exceptions import TenancyError
from tenancy.models.migration import RunType
from tenancy.models.shop import Shop
from tenancy.services.checkpoints import CheckpointStore
from tenancy.services.provisioning import (
    ProvisioningBackend,
    ProvisioningOutcome,
    TenantProvisioningService,
)
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.runs import RunRecorder
from tenancy.services.schema import TenantSchema
from tenancy.services.tenant_store import TenantStoreFactory
from tenancy.workers.report import Echo, JobReport

logger = logging.getLogger(__name__)


async def _load_shops(master_engine: AsyncEngine) -> list[Shop]:
    async with make_session_factory(master_engine)() as session:
        result = await session.execute(select(Shop).order_by(Shop.id))
        return list(result.scalars().all())


async def run_provision(
    settings: Settings,
    master_engine: AsyncEngine,
    backend: ProvisioningBackend,
    *,
    stores: TenantStoreFactory | None = None,
    echo: Echo | None = None,
) -> JobReport:
    """Create a tenant store for every shop that has no registry record yet.

    Shops already registered are skipped. A shop whose database and role
    exist without a registry record (a crash between provisioning and
    registration) gets its password rotated and is registered.
    """
    stores = stores or TenantStoreFactory.from_settings(settings)
    registry = ConnectionRegistry.from_settings(master_engine, settings)
    service = TenantProvisioningService(settings, backend, stores, TenantSchema(master_engine))
    runs = RunRecorder(master_engine)
    report = JobReport("provision", echo=echo)

    await ping(master_engine)
    shops = await _load_shops(master_engine)
    run = await runs.start(RunType.PROVISION, {"shops": len(shops)})
    report.run_id = run.id
    report.note(f"Found {len(shops)} shops")

    for index, shop in enumerate(shops, start=1):
        unit = f"shop {shop.id}"
        prefix = f"[{index}/{len(shops)}] {unit} ({shop.name})"
        try:
            if await registry.get_connection(shop.id) is not None:
                report.skip(f"{prefix}: already registered, skipping")
                continue

            result = await service.provision_tenant(shop.id, shop.name)
            if result.outcome is ProvisioningOutcome.ALREADY_PROVISIONED:
                credentials = await service.recover_credentials(shop.id)
                action = "recovered"
            else:
                credentials = result.credentials
                action = "provisioned"
            await registry.register_connection(shop.id, credentials)
        except TenancyError as exc:
            report.failure(unit, f"{prefix}: FAILED ({exc})", str(exc))
            continue
        report.success(f"{prefix}: {action} {credentials.database}")

    await runs.complete(
        run.id,
        {
            "shops": len(shops),
            "provisioned": report.succeeded,
            "skipped": report.skipped,
            "failed": report.failed,
            "failures": [{"unit": unit, "error": error} for unit, error in report.errors],
        },
    )
    return report


async def run_deprovision(
    settings: Settings,
    master_engine: AsyncEngine,
    backend: ProvisioningBackend,
    shop_id: int,
    *,
    stores: TenantStoreFactory | None = None,
    echo: Echo | None = None,
) -> JobReport:
    """Off-board one shop: drop its store, forget its credentials and progress.

    Irreversible. Safe to repeat if a previous attempt stopped halfway.
    """
    stores = stores or TenantStoreFactory.from_settings(settings)
    registry = ConnectionRegistry.from_settings(master_engine, settings)
    service = TenantProvisioningService(settings, backend, stores)
    report = JobReport("deprovision", echo=echo)
    unit = f"shop {shop_id}"

    await ping(master_engine)
    try:
        await service.deprovision_tenant(shop_id)
    except TenancyError as exc:
        report.failure(unit, f"{unit}: FAILED ({exc})", str(exc))
        return report

    await registry.remove_connection(shop_id)
    await CheckpointStore(master_engine).clear_tenant(shop_id)
    logger.warning("Shop %s off-boarded", shop_id)
    report.success(
        f"{unit}: dropped {service.database_name(shop_id)} and {service.role_name(shop_id)}"
    )
    return report
