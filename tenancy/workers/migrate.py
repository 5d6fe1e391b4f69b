"""Migrate job — copies every registered shop into its tenant store."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.config import Settings
from tenancy.core.database import ping
from tenancy.services.checkpoints import CheckpointStore
from tenancy.services.migration import MigrationEngine, TenantMigrationResult
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.runs import RunRecorder
from tenancy.services.schema import TenantSchema
from tenancy.services.tenant_store import TenantStoreFactory
from tenancy.workers.report import Echo, JobReport


def build_migration_engine(
    settings: Settings,
    master_engine: AsyncEngine,
    *,
    stores: TenantStoreFactory | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
) -> MigrationEngine:
    return MigrationEngine(
        master_engine,
        ConnectionRegistry.from_settings(master_engine, settings),
        stores or TenantStoreFactory.from_settings(settings),
        CheckpointStore(master_engine),
        RunRecorder(master_engine),
        TenantSchema(master_engine),
        batch_size=batch_size or settings.batch_size,
        concurrency=concurrency or settings.migration_concurrency,
    )


async def run_migrate(
    settings: Settings,
    master_engine: AsyncEngine,
    *,
    stores: TenantStoreFactory | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
    shop_ids: list[int] | None = None,
    echo: Echo | None = None,
) -> JobReport:
    engine = build_migration_engine(
        settings,
        master_engine,
        stores=stores,
        batch_size=batch_size,
        concurrency=concurrency,
    )
    report = JobReport("migrate", echo=echo)
    await ping(master_engine)
    report.note(f"Batch size: {engine.batch_size}, concurrency: {engine.concurrency}")

    def _record(result: TenantMigrationResult) -> None:
        unit = f"shop {result.shop_id}"
        if result.ok:
            report.success(
                f"{unit}: {result.tables_completed}/{result.total_tables} tables, "
                f"{result.rows_migrated} rows ({result.rows_copied} copied this run)"
            )
        else:
            where = f" at {result.failed_table}" if result.failed_table else ""
            report.failure(unit, f"{unit}: FAILED{where} ({result.error})", result.error or "")

    summary = await engine.migrate_all(shop_ids, on_result=_record)
    report.run_id = summary.run_id
    report.totals["Rows migrated"] = summary.total_rows
    return report
