"""Shared test fixtures — file-backed SQLite master and tenant stores.

The master database gets a small stand-in business schema (``shops`` plus
every catalog table with ``id``, ``shop_id``, a payload column and its
foreign-key columns). Tenant stores are one SQLite file per tenant database
name; provisioning goes through an in-memory fake of the PostgreSQL backend.
"""

from collections.abc import AsyncGenerator
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    event,
    insert,
    text,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.api.deps import get_engine, get_tenant_stores
from tenancy.core.config import Settings, get_settings
from tenancy.core.database import create_engine_for, init_bookkeeping
from tenancy.main import app
from tenancy.models.tenant_connection import TenantCredentials
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.tables import MIGRATED_TABLES
from tenancy.services.tenant_store import TenantStoreFactory

TEST_ENCRYPTION_KEY = "5f0c8e6b2d9a47c1b3e8f2a6d4c09b7e1a3f5d7c9e2b4a6c8d0f1e3a5b7c9d2e"
STATUS_TOKEN = "status-test-token"


# ── Master business schema ───────────────────────────────────

def build_master_metadata() -> MetaData:
    metadata = MetaData()
    Table(
        "shops",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
    )
    for descriptor in MIGRATED_TABLES:
        columns = [
            Column("id", Integer, primary_key=True),
            Column("shop_id", Integer, ForeignKey("shops.id"), nullable=False),
            Column("payload", String(255)),
            Column("created_at", DateTime),
        ]
        if descriptor.name == "repairs":
            columns.append(Column("details", JSON))
        columns.extend(
            Column(ref.column, Integer, ForeignKey(f"{ref.parent}.id"))
            for ref in descriptor.references
        )
        Table(descriptor.name, metadata, *columns)
    return metadata


MASTER_METADATA = build_master_metadata()


async def seed(engine: AsyncEngine, table_name: str, rows: list[dict]) -> None:
    """Insert rows into a table of the stand-in business schema."""
    table = MASTER_METADATA.tables[table_name]
    async with engine.begin() as conn:
        await conn.execute(insert(table), rows)


async def seed_shop(
    engine: AsyncEngine,
    shop_id: int,
    *,
    customers: int = 0,
    repairs: int = 0,
    first_id: int = 1,
    loaners: int = 0,
) -> None:
    """A shop with ``customers`` customers and ``repairs`` repairs spread over them.

    With ``loaners``, that many loaner devices are created and handed out to
    the first repairs.
    """
    await seed(engine, "shops", [{"id": shop_id, "name": f"Shop {shop_id}"}])
    loaner_ids = list(range(first_id, first_id + loaners))
    if loaner_ids:
        await seed(engine, "loaner_devices", [
            {"id": lid, "shop_id": shop_id, "payload": f"loaner {lid}"} for lid in loaner_ids
        ])
    customer_ids = list(range(first_id, first_id + customers))
    if customer_ids:
        await seed(engine, "customers", [
            {
                "id": cid,
                "shop_id": shop_id,
                "payload": f"customer {cid}",
                "created_at": datetime(2025, 1, 1, 12, 0, 0),
            }
            for cid in customer_ids
        ])
    if repairs:
        await seed(engine, "repairs", [
            {
                "id": first_id + n,
                "shop_id": shop_id,
                "payload": f"repair {n}",
                "customer_id": customer_ids[n % len(customer_ids)],
                "loaner_device_id": loaner_ids[n] if n < len(loaner_ids) else None,
                "details": {"device": "phone", "parts": [n]},
            }
            for n in range(repairs)
        ])


# ── Fakes ────────────────────────────────────────────────────

def _enforce_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SQLiteStoreFactory(TenantStoreFactory):
    """Maps each tenant database name to ``<directory>/<name>.sqlite``.

    Stores opened for migration and validation enforce foreign keys, as a
    PostgreSQL tenant store would. ``engine_for`` does not, so tests can
    plant inconsistent rows.
    """

    def __init__(self, directory) -> None:
        super().__init__(
            drivername="sqlite+aiosqlite", connect_timeout=5.0, statement_timeout=5.0
        )
        self.directory = directory
        self.unreachable: set[str] = set()

    def url_for(self, credentials: TenantCredentials):
        if credentials.database in self.unreachable:
            # parent directory does not exist, so the open fails
            return f"sqlite+aiosqlite:///{self.directory}/offline/{credentials.database}"
        return f"sqlite+aiosqlite:///{self.directory}/{credentials.database}.sqlite"

    def create_engine(self, credentials: TenantCredentials) -> AsyncEngine:
        engine = super().create_engine(credentials)
        event.listen(engine.sync_engine, "connect", _enforce_foreign_keys)
        return engine

    def engine_for(self, database: str) -> AsyncEngine:
        return create_engine_for(f"sqlite+aiosqlite:///{self.directory}/{database}.sqlite")


class FakeProvisioningBackend:
    """In-memory stand-in for the PostgreSQL admin connection."""

    def __init__(self) -> None:
        self.databases: dict[str, dict] = {}
        self.roles: dict[str, str] = {}
        self.fail_on: str | None = None
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_on == operation:
            raise OperationalError(operation, {}, Exception("simulated server error"))

    def endpoint(self) -> tuple[str, int]:
        return "db.internal", 5432

    async def database_exists(self, name: str) -> bool:
        return name in self.databases

    async def role_exists(self, name: str) -> bool:
        return name in self.roles

    async def create_role(self, name: str, password: str) -> None:
        self.calls.append(("create_role", name))
        self._maybe_fail("create_role")
        self.roles[name] = password

    async def set_role_password(self, name: str, password: str) -> None:
        self.calls.append(("set_role_password", name))
        self.roles[name] = password

    async def create_database(self, name: str, owner: str, comment: str = "") -> None:
        self.calls.append(("create_database", name))
        self._maybe_fail("create_database")
        self.databases[name] = {"owner": owner, "comment": comment}

    async def terminate_connections(self, database: str) -> None:
        self.calls.append(("terminate_connections", database))

    async def drop_database(self, name: str) -> None:
        self.calls.append(("drop_database", name))
        self._maybe_fail("drop_database")
        self.databases.pop(name, None)

    async def drop_role(self, name: str) -> None:
        self.calls.append(("drop_role", name))
        self.roles.pop(name, None)


def credentials_for(shop_id: int, password: str = "s3cret-pw") -> TenantCredentials:
    return TenantCredentials(
        host="db.internal",
        port=5432,
        database=f"shop_{shop_id}_db",
        username=f"shop_user_{shop_id}",
        password=password,
    )


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/master.sqlite",
        admin_mode=True,
        tenant_encryption_key=TEST_ENCRYPTION_KEY,
        registry_cache_ttl=60.0,
        batch_size=2,
        status_api_token=STATUS_TOKEN,
    )


@pytest.fixture
async def master_engine(settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine_for(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(MASTER_METADATA.create_all)
    await init_bookkeeping(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def stores(tmp_path) -> SQLiteStoreFactory:
    directory = tmp_path / "tenants"
    directory.mkdir()
    return SQLiteStoreFactory(directory)


@pytest.fixture
def backend() -> FakeProvisioningBackend:
    return FakeProvisioningBackend()


@pytest.fixture
def registry(master_engine, settings) -> ConnectionRegistry:
    return ConnectionRegistry.from_settings(master_engine, settings)


@pytest.fixture
async def client(master_engine, settings, stores) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client bound to the test master database."""
    app.dependency_overrides[get_engine] = lambda: master_engine
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_tenant_stores] = lambda: stores

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {STATUS_TOKEN}"}


async def tenant_rows(stores: SQLiteStoreFactory, shop_id: int, table_name: str) -> list[dict]:
    """All rows of a tenant store table, ordered by id."""
    engine = stores.engine_for(f"shop_{shop_id}_db")
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text(f"SELECT * FROM {table_name} ORDER BY id"))
            return [dict(row) for row in result.mappings()]
    finally:
        await engine.dispose()


async def tenant_execute(stores: SQLiteStoreFactory, shop_id: int, statement: str) -> None:
    engine = stores.engine_for(f"shop_{shop_id}_db")
    try:
        async with engine.begin() as conn:
            await conn.execute(text(statement))
    finally:
        await engine.dispose()
