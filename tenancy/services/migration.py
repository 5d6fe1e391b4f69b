"""Migration engine — copies each shop's rows from the master into its own store.

Per shop, tables are copied in catalog order (parents before children). Per
table, rows are read in ascending primary-key batches; each batch is written
to the tenant store in one transaction with ``ON CONFLICT DO NOTHING`` and
only then is the checkpoint advanced. A crash therefore loses at most the
in-flight batch, and replaying it is harmless: rows already present are
skipped, so re-running the job is always safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy import Table, false, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.database import upsert_insert
from tenancy.models.migration import CheckpointStatus, RunType
from tenancy.services.checkpoints import CheckpointStore
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.runs import RunRecorder
from tenancy.services.schema import TenantSchema
from tenancy.services.tables import MIGRATED_TABLES, TableDescriptor, strip_scope_column
from tenancy.services.tenant_store import TenantStoreFactory, describe_error

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass
class TableProgress:
    table: str
    rows_copied: int = 0  # this run
    rows_total: int = 0  # per checkpoint, across runs
    batches: int = 0
    skipped: bool = False


@dataclass
class TenantMigrationResult:
    shop_id: int
    total_tables: int
    status: CheckpointStatus = CheckpointStatus.PENDING
    tables: list[TableProgress] = field(default_factory=list)
    failed_table: str | None = None
    error: str | None = None

    @property
    def tables_completed(self) -> int:
        return len(self.tables)

    @property
    def rows_migrated(self) -> int:
        return sum(progress.rows_total for progress in self.tables)

    @property
    def rows_copied(self) -> int:
        return sum(progress.rows_copied for progress in self.tables)

    @property
    def ok(self) -> bool:
        return self.status == CheckpointStatus.COMPLETED


@dataclass
class MigrationSummary:
    run_id: int
    results: list[TenantMigrationResult]

    @property
    def succeeded(self) -> list[TenantMigrationResult]:
        return [result for result in self.results if result.ok]

    @property
    def failed(self) -> list[TenantMigrationResult]:
        return [result for result in self.results if not result.ok]

    @property
    def total_rows(self) -> int:
        return sum(result.rows_migrated for result in self.results)


async def _run_all(
    shop_ids: list[int],
    worker: Callable[[int], Awaitable[TenantMigrationResult]],
) -> list[TenantMigrationResult]:
    """Run one task per shop; the first error escaping a task cancels the rest."""
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(worker(shop_id)) for shop_id in shop_ids]
    except ExceptionGroup as errors:
        raise errors.exceptions[0]
    return [task.result() for task in tasks]


class MigrationEngine:
    def __init__(
        self,
        master_engine: AsyncEngine,
        registry: ConnectionRegistry,
        stores: TenantStoreFactory,
        checkpoints: CheckpointStore,
        runs: RunRecorder,
        schema: TenantSchema,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = 1,
        tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._master_engine = master_engine
        self._registry = registry
        self._stores = stores
        self._checkpoints = checkpoints
        self._runs = runs
        self._schema = schema
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.tables = tables

    # ── Whole job ────────────────────────────────────────────

    async def migrate_all(
        self,
        shop_ids: list[int] | None = None,
        on_result: Callable[[TenantMigrationResult], None] | None = None,
    ) -> MigrationSummary:
        """Migrate every registered shop; one shop failing never stops the others."""
        table_names = [descriptor.name for descriptor in self.tables]
        run = await self._runs.start(
            RunType.MIGRATE, {"batch_size": self.batch_size, "tables": table_names}
        )
        logger.info("Migration run %s started", run.id)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _worker(shop_id: int) -> TenantMigrationResult:
            async with semaphore:
                result = await self.migrate_tenant(shop_id)
            if on_result is not None:
                on_result(result)
            return result

        try:
            # fails fast on a catalog order the master schema cannot satisfy
            await self._schema.load()
            if shop_ids is None:
                shop_ids = await self._registry.get_all_shop_ids()
            if self.concurrency == 1:
                results = [await _worker(shop_id) for shop_id in shop_ids]
            else:
                results = await _run_all(shop_ids, _worker)
        except Exception as exc:
            await self._runs.complete(
                run.id,
                {"batch_size": self.batch_size, "tables": table_names},
                error=describe_error(exc),
            )
            raise

        summary = MigrationSummary(run_id=run.id, results=results)
        await self._runs.complete(
            run.id,
            {
                "batch_size": self.batch_size,
                "tables": table_names,
                "tenants_processed": len(results),
                "tenants_succeeded": len(summary.succeeded),
                "tenants_failed": len(summary.failed),
                "total_rows_migrated": summary.total_rows,
                "failures": [
                    {"shop_id": r.shop_id, "table": r.failed_table, "error": r.error}
                    for r in summary.failed
                ],
            },
        )
        logger.info(
            "Migration run %s completed: %d succeeded, %d failed",
            run.id, len(summary.succeeded), len(summary.failed),
        )
        return summary

    # ── One tenant ───────────────────────────────────────────

    async def migrate_tenant(self, shop_id: int) -> TenantMigrationResult:
        """Copy all tables for one shop. Failures are recorded, not raised."""
        result = TenantMigrationResult(shop_id=shop_id, total_tables=len(self.tables))
        current: str | None = None

        try:
            credentials = await self._registry.require_connection(shop_id)
            async with self._stores.open(shop_id, credentials) as tenant_engine:
                await self._stores.bounded(shop_id, self._schema.apply(tenant_engine))
                for descriptor in self.tables:
                    current = descriptor.name
                    result.tables.append(
                        await self.migrate_table(shop_id, descriptor, tenant_engine)
                    )
                current = None
            await self._registry.mark_connection_used(shop_id)
        except Exception as exc:
            result.status = CheckpointStatus.FAILED
            result.failed_table = current
            result.error = describe_error(exc)
            logger.error(
                "Migration of shop %s failed at table %s: %s",
                shop_id, current or "-", result.error,
            )
            if current is not None:
                await self._checkpoints.fail(shop_id, current, result.error)
            return result

        result.status = CheckpointStatus.COMPLETED
        logger.info("Shop %s migrated: %d rows", shop_id, result.rows_migrated)
        return result

    # ── One table ────────────────────────────────────────────

    async def migrate_table(
        self, shop_id: int, descriptor: TableDescriptor, tenant_engine: AsyncEngine
    ) -> TableProgress:
        checkpoint = await self._checkpoints.load(shop_id, descriptor.name)
        if checkpoint is not None and checkpoint.status == CheckpointStatus.COMPLETED:
            return TableProgress(
                descriptor.name, rows_total=checkpoint.rows_processed, skipped=True
            )

        checkpoint = await self._checkpoints.begin(shop_id, descriptor.name)
        progress = TableProgress(descriptor.name, rows_total=checkpoint.rows_processed)
        if checkpoint.last_synced_pk:
            logger.info(
                "Resuming shop %s table %s after pk %s",
                shop_id, descriptor.name, checkpoint.last_synced_pk,
            )

        source = await self._schema.master_table(descriptor.name)
        target = await self._schema.tenant_table(descriptor.name)

        batches = self.iter_batches(source, descriptor, shop_id, checkpoint.last_synced_pk)
        async for batch in batches:
            await self._stores.bounded(
                shop_id, self._write_batch(tenant_engine, target, descriptor, batch)
            )
            last_pk = batch[-1][descriptor.pk_column]
            await self._checkpoints.advance(shop_id, descriptor.name, last_pk, len(batch))
            progress.rows_copied += len(batch)
            progress.rows_total += len(batch)
            progress.batches += 1

        await self._stores.bounded(
            shop_id, self._sync_sequence(tenant_engine, target, descriptor)
        )
        await self._checkpoints.complete(shop_id, descriptor.name)
        return progress

    async def iter_batches(
        self,
        source: Table,
        descriptor: TableDescriptor,
        shop_id: int,
        after_pk: int,
    ) -> AsyncIterator[list[dict]]:
        """Yield the shop's rows with pk > ``after_pk`` in ascending batches.

        Each fetch happens only after the previous batch was consumed, so the
        sequence can be abandoned at any point and restarted from a
        checkpoint. It ends at the first empty fetch.
        """
        pk = source.c[descriptor.pk_column]
        scope = source.c[descriptor.scope_column]

        async def _fetch(cursor: int) -> list[dict]:
            stmt = (
                select(source)
                .where(scope == shop_id, pk > cursor)
                .order_by(pk)
                .limit(self.batch_size)
            )
            async with self._master_engine.connect() as conn:
                result = await conn.execute(stmt)
                return [dict(row) for row in result.mappings()]

        rows = await _fetch(after_pk)
        while rows:
            yield rows
            rows = await _fetch(rows[-1][descriptor.pk_column])

    async def _write_batch(
        self,
        tenant_engine: AsyncEngine,
        target: Table,
        descriptor: TableDescriptor,
        batch: list[dict],
    ) -> None:
        records = [strip_scope_column(row, descriptor) for row in batch]
        async with tenant_engine.begin() as conn:
            stmt = upsert_insert(target, conn.dialect.name).on_conflict_do_nothing(
                index_elements=[descriptor.pk_column]
            )
            await conn.execute(stmt, records)

    async def _sync_sequence(
        self, tenant_engine: AsyncEngine, target: Table, descriptor: TableDescriptor
    ) -> None:
        """Move a PostgreSQL serial sequence past the copied keys."""
        if tenant_engine.dialect.name != "postgresql":
            return
        pk = target.c[descriptor.pk_column]
        next_value = func.coalesce(select(func.max(pk)).scalar_subquery(), 0) + 1
        stmt = select(
            func.setval(func.pg_get_serial_sequence(target.name, pk.name), next_value, false())
        )
        async with tenant_engine.begin() as conn:
            await conn.execute(stmt)
