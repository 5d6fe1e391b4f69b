"""Tests for the ARQ task functions (called directly, no Redis)."""

import pytest

import tenancy.workers.main as worker_main
from conftest import credentials_for, seed_shop
from tenancy.core.exceptions import ConfigurationError
from tenancy.services.tenant_store import TenantStoreFactory


@pytest.fixture
def worker_env(monkeypatch, settings, stores):
    monkeypatch.setattr(worker_main, "get_settings", lambda: settings)
    monkeypatch.setattr(
        TenantStoreFactory, "from_settings", classmethod(lambda cls, _settings: stores)
    )
    return settings


@pytest.mark.asyncio
async def test_startup_requires_encryption_key(worker_env):
    worker_env.tenant_encryption_key = ""
    with pytest.raises(ConfigurationError):
        await worker_main.startup({})


@pytest.mark.asyncio
async def test_migrate_and_validate_tasks(worker_env, master_engine, registry):
    await seed_shop(master_engine, 1, customers=3, repairs=2)
    await registry.register_connection(1, credentials_for(1))

    result = await worker_main.migrate_tenants({}, batch_size=1)
    assert result["job"] == "migrate"
    assert result["succeeded"] == 1
    assert result["failed"] == 0
    assert result["Rows migrated"] == 5
    assert result["run_id"] is not None

    result = await worker_main.validate_tenants({}, shop_ids=[1])
    assert result["failed"] == 0
    assert result["Checks failed"] == 0


@pytest.mark.asyncio
async def test_migrate_task_reports_missing_connection(worker_env, master_engine):
    result = await worker_main.migrate_tenants({}, shop_ids=[42])
    assert result["failed"] == 1
    assert result["errors"][0]["unit"] == "shop 42"


def test_worker_settings():
    assert worker_main.WorkerSettings.max_jobs == 1
    assert {f.__name__ for f in worker_main.WorkerSettings.functions} == {
        "migrate_tenants",
        "validate_tenants",
    }
