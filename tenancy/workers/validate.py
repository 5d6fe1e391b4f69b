"""Validate job — compares every registered shop's store against the master."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.config import Settings
from tenancy.core.database import ping
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.runs import RunRecorder
from tenancy.services.tenant_store import TenantStoreFactory
from tenancy.services.validation import TenantValidationReport, ValidationEngine
from tenancy.workers.report import Echo, JobReport


async def run_validate(
    settings: Settings,
    master_engine: AsyncEngine,
    *,
    stores: TenantStoreFactory | None = None,
    shop_ids: list[int] | None = None,
    echo: Echo | None = None,
) -> JobReport:
    engine = ValidationEngine(
        master_engine,
        ConnectionRegistry.from_settings(master_engine, settings),
        stores or TenantStoreFactory.from_settings(settings),
        RunRecorder(master_engine),
    )
    report = JobReport("validate", echo=echo)
    await ping(master_engine)

    def _record(tenant: TenantValidationReport) -> None:
        unit = f"shop {tenant.shop_id}"
        if tenant.ok:
            report.success(f"{unit}: {tenant.passed}/{tenant.checks_run} checks passed")
            return
        report.failure(
            unit,
            f"{unit}: {tenant.failed}/{tenant.checks_run} checks FAILED",
            *(
                f"{failure.table or '-'}: {failure.kind.value}: {failure.detail}"
                for failure in tenant.failures
            ),
        )

    summary = await engine.validate_all(shop_ids, on_report=_record)
    report.run_id = summary.run_id
    report.totals["Checks run"] = summary.total_checks
    report.totals["Checks failed"] = summary.failed
    return report
