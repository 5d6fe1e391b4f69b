"""Tests for the checkpointed migration engine."""

import asyncio
import json
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import MASTER_METADATA, credentials_for, seed_shop, tenant_rows
from tenancy.core.exceptions import CheckpointRegression, ConfigurationError
from tenancy.models.migration import CheckpointStatus, RunStatus
from tenancy.services.checkpoints import CheckpointStore
from tenancy.services.migration import MigrationEngine
from tenancy.services.runs import RunRecorder
from tenancy.services.schema import TenantSchema, build_tenant_metadata
from tenancy.services.tables import (
    MIGRATED_TABLES,
    ForeignKeyRef,
    TableDescriptor,
    table_by_name,
)
from tenancy.workers.migrate import build_migration_engine


@pytest.fixture
async def two_shops(master_engine, registry):
    """Shop 1: 5 customers and 3 repairs. Shop 2: 3 customers, no repairs."""
    await seed_shop(master_engine, 1, customers=5, repairs=3)
    await seed_shop(master_engine, 2, customers=3, first_id=101)
    await registry.register_connection(1, credentials_for(1))
    await registry.register_connection(2, credentials_for(2))


@pytest.fixture
def engine(settings, master_engine, stores) -> MigrationEngine:
    return build_migration_engine(settings, master_engine, stores=stores)


async def _checkpoints(master_engine, shop_id: int) -> dict:
    states = await CheckpointStore(master_engine).list_for_tenant(shop_id)
    return {state.table_name: state for state in states}


@pytest.mark.asyncio
async def test_migrate_copies_rows_without_scope_column(engine, two_shops, stores, master_engine):
    summary = await engine.migrate_all()

    assert [r.shop_id for r in summary.succeeded] == [1, 2]
    customers = await tenant_rows(stores, 1, "customers")
    assert [row["id"] for row in customers] == [1, 2, 3, 4, 5]
    assert "shop_id" not in customers[0]
    assert customers[0]["payload"] == "customer 1"

    repairs = await tenant_rows(stores, 1, "repairs")
    assert [row["customer_id"] for row in repairs] == [1, 2, 3]
    assert json.loads(repairs[0]["details"]) == {"device": "phone", "parts": [0]}

    assert [row["id"] for row in await tenant_rows(stores, 2, "customers")] == [101, 102, 103]
    assert await tenant_rows(stores, 2, "repairs") == []


@pytest.mark.asyncio
async def test_checkpoints_completed(engine, two_shops, master_engine):
    await engine.migrate_all()

    states = await _checkpoints(master_engine, 1)
    assert set(states) == {descriptor.name for descriptor in MIGRATED_TABLES}
    assert all(state.status == CheckpointStatus.COMPLETED for state in states.values())
    assert (states["customers"].last_synced_pk, states["customers"].rows_processed) == (5, 5)
    assert (states["repairs"].last_synced_pk, states["repairs"].rows_processed) == (3, 3)
    assert (states["orders"].last_synced_pk, states["orders"].rows_processed) == (0, 0)


@pytest.mark.asyncio
async def test_migrate_twice_equals_once(engine, two_shops, stores):
    await engine.migrate_all()
    first = await tenant_rows(stores, 1, "customers")

    summary = await engine.migrate_all()
    result = summary.results[0]
    assert result.ok
    assert result.rows_copied == 0
    assert all(progress.skipped for progress in result.tables)
    assert result.rows_migrated == 8
    assert await tenant_rows(stores, 1, "customers") == first


@pytest.mark.asyncio
async def test_interrupted_migration_resumes_without_duplicates(
    engine, two_shops, stores, master_engine
):
    original = MigrationEngine._write_batch
    calls = 0

    async def flaky(self, tenant_engine, target, descriptor, batch):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise OperationalError("INSERT", {}, Exception("connection reset"))
        return await original(self, tenant_engine, target, descriptor, batch)

    with patch.object(MigrationEngine, "_write_batch", flaky):
        summary = await engine.migrate_all([1])

    result = summary.results[0]
    assert not result.ok
    assert result.failed_table == "customers"
    assert "connection reset" in result.error
    state = (await _checkpoints(master_engine, 1))["customers"]
    assert state.status == CheckpointStatus.FAILED
    assert (state.last_synced_pk, state.rows_processed) == (2, 2)
    assert "connection reset" in state.error
    assert [row["id"] for row in await tenant_rows(stores, 1, "customers")] == [1, 2]

    summary = await engine.migrate_all([1])
    assert summary.results[0].ok
    assert [row["id"] for row in await tenant_rows(stores, 1, "customers")] == [1, 2, 3, 4, 5]
    state = (await _checkpoints(master_engine, 1))["customers"]
    assert (state.status, state.last_synced_pk, state.rows_processed) == (
        CheckpointStatus.COMPLETED, 5, 5,
    )
    assert state.error is None


@pytest.mark.asyncio
async def test_replayed_batches_are_skipped(engine, two_shops, stores, master_engine):
    """Rows written before a checkpoint was lost are not duplicated."""
    await engine.migrate_all([1])
    await CheckpointStore(master_engine).clear_tenant(1)

    summary = await engine.migrate_all([1])
    assert summary.results[0].ok
    assert summary.results[0].rows_copied == 8
    assert len(await tenant_rows(stores, 1, "customers")) == 5
    assert len(await tenant_rows(stores, 1, "repairs")) == 3


@pytest.mark.asyncio
async def test_unreachable_tenant_does_not_stop_others(engine, two_shops, stores, master_engine):
    stores.unreachable.add("shop_1_db")

    summary = await engine.migrate_all()

    assert [r.shop_id for r in summary.failed] == [1]
    assert [r.shop_id for r in summary.succeeded] == [2]
    assert "unreachable" in summary.failed[0].error
    assert summary.failed[0].failed_table is None
    assert await _checkpoints(master_engine, 1) == {}

    run = await RunRecorder(master_engine).get(summary.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.run_metadata["tenants_processed"] == 2
    assert run.run_metadata["total_rows_migrated"] == 3
    assert run.run_metadata["failures"][0]["shop_id"] == 1


@pytest.mark.asyncio
async def test_unregistered_shop_recorded_as_failure(engine, two_shops):
    summary = await engine.migrate_all([2, 99])

    assert [r.shop_id for r in summary.succeeded] == [2]
    assert summary.failed[0].shop_id == 99
    assert "No connection registered" in summary.failed[0].error


@pytest.mark.asyncio
async def test_concurrent_workers(settings, master_engine, stores, two_shops):
    engine = build_migration_engine(settings, master_engine, stores=stores, concurrency=2)
    seen = []

    summary = await engine.migrate_all(on_result=lambda result: seen.append(result.shop_id))

    assert sorted(seen) == [1, 2]
    assert len(summary.succeeded) == 2
    assert summary.total_rows == 11


@pytest.mark.asyncio
async def test_run_metadata(engine, two_shops, master_engine):
    summary = await engine.migrate_all()

    run = await RunRecorder(master_engine).get(summary.run_id)
    assert run.run_type == "migrate"
    assert run.completed_at is not None
    assert run.error is None
    assert run.run_metadata["batch_size"] == 2
    assert run.run_metadata["tables"][0] == "customers"
    assert run.run_metadata["total_rows_migrated"] == 11
    assert run.run_metadata["failures"] == []


@pytest.mark.asyncio
async def test_iter_batches_is_scoped_and_ordered(engine, two_shops):
    source = await engine._schema.master_table("customers")
    descriptor = table_by_name("customers")

    batches = [batch async for batch in engine.iter_batches(source, descriptor, 1, 0)]
    assert [[row["id"] for row in batch] for batch in batches] == [[1, 2], [3, 4], [5]]

    resumed = [batch async for batch in engine.iter_batches(source, descriptor, 1, 2)]
    assert [[row["id"] for row in batch] for batch in resumed] == [[3, 4], [5]]

    other = [batch async for batch in engine.iter_batches(source, descriptor, 2, 0)]
    assert [row["shop_id"] for batch in other for row in batch] == [2, 2, 2]


@pytest.mark.asyncio
async def test_batch_size_must_be_positive(settings, master_engine, stores):
    with pytest.raises(ValueError):
        build_migration_engine(settings, master_engine, stores=stores, batch_size=-1)


@pytest.mark.asyncio
async def test_repairs_with_loaner_devices_keep_foreign_keys(
    engine, master_engine, registry, stores
):
    await seed_shop(master_engine, 1, customers=2, repairs=3, loaners=2)
    await registry.register_connection(1, credentials_for(1))

    summary = await engine.migrate_all([1])

    assert summary.results[0].ok, summary.results[0].error
    assert [row["id"] for row in await tenant_rows(stores, 1, "loaner_devices")] == [1, 2]
    repairs = await tenant_rows(stores, 1, "repairs")
    assert [row["loaner_device_id"] for row in repairs] == [1, 2, None]


def _loaners_after_repairs() -> tuple[TableDescriptor, ...]:
    return (
        TableDescriptor("customers"),
        TableDescriptor("repairs", references=(ForeignKeyRef("customer_id", "customers"),)),
        TableDescriptor("loaner_devices"),
    )


def test_tenant_metadata_rejects_reference_to_later_table():
    with pytest.raises(ConfigurationError, match="repairs references loaner_devices"):
        build_tenant_metadata(MASTER_METADATA, _loaners_after_repairs())


def test_tenant_metadata_keeps_ordered_references():
    tenant = build_tenant_metadata(MASTER_METADATA)
    parents = {fk.referred_table.name for fk in tenant.tables["repairs"].foreign_key_constraints}
    assert parents == {"customers", "loaner_devices"}
    assert "shop_id" not in tenant.tables["repairs"].c


@pytest.mark.asyncio
async def test_unsatisfiable_catalog_order_fails_fast(
    settings, master_engine, registry, stores, two_shops
):
    tables = _loaners_after_repairs()
    engine = MigrationEngine(
        master_engine,
        registry,
        stores,
        CheckpointStore(master_engine),
        RunRecorder(master_engine),
        TenantSchema(master_engine, tables),
        batch_size=2,
        tables=tables,
    )

    with pytest.raises(ConfigurationError):
        await engine.migrate_all()

    assert await _checkpoints(master_engine, 1) == {}
    runs = await RunRecorder(master_engine).list_recent()
    assert "ConfigurationError" in runs[0].error


@pytest.mark.asyncio
async def test_unresponsive_store_fails_tenant_not_run(engine, two_shops, stores, master_engine):
    stores.statement_timeout = 0.2
    original = MigrationEngine._write_batch

    async def hang_for_shop_1(self, tenant_engine, target, descriptor, batch):
        if batch[0]["shop_id"] == 1:
            await asyncio.sleep(3600)
        return await original(self, tenant_engine, target, descriptor, batch)

    with patch.object(MigrationEngine, "_write_batch", hang_for_shop_1):
        summary = await asyncio.wait_for(engine.migrate_all(), timeout=10)

    failed = summary.failed[0]
    assert failed.shop_id == 1
    assert failed.failed_table == "customers"
    assert "no response within 0.2s" in failed.error
    assert [r.shop_id for r in summary.succeeded] == [2]
    state = (await _checkpoints(master_engine, 1))["customers"]
    assert state.status == CheckpointStatus.FAILED
    assert state.last_synced_pk == 0


@pytest.mark.asyncio
async def test_fatal_error_cancels_concurrent_workers(settings, master_engine, stores, two_shops):
    engine = build_migration_engine(settings, master_engine, stores=stores, concurrency=2)
    cancelled = []

    async def migrate_tenant(self, shop_id):
        if shop_id == 1:
            await asyncio.sleep(0.05)
            raise RuntimeError("master connection lost")
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(shop_id)
            raise

    with patch.object(MigrationEngine, "migrate_tenant", migrate_tenant):
        with pytest.raises(RuntimeError, match="master connection lost"):
            await asyncio.wait_for(engine.migrate_all(), timeout=10)

    assert cancelled == [2]
    runs = await RunRecorder(master_engine).list_recent()
    assert runs[0].status == RunStatus.COMPLETED
    assert "master connection lost" in runs[0].error


# ── Checkpoint store ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_checkpoint_regression_refused(master_engine):
    store = CheckpointStore(master_engine)
    await store.begin(1, "customers")
    await store.advance(1, "customers", 10, 10)

    with pytest.raises(CheckpointRegression):
        await store.advance(1, "customers", 5, 1)

    state = await store.load(1, "customers")
    assert (state.last_synced_pk, state.rows_processed) == (10, 10)


@pytest.mark.asyncio
async def test_begin_keeps_position(master_engine):
    store = CheckpointStore(master_engine)
    await store.begin(1, "customers")
    await store.advance(1, "customers", 4, 4)
    await store.fail(1, "customers", "boom")

    state = await store.begin(1, "customers")
    assert state.status == CheckpointStatus.IN_PROGRESS
    assert state.last_synced_pk == 4
    assert state.error is None
