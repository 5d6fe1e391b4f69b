"""Tenant store schema, derived from the master business tables.

The business schema belongs to the application, not to this package, so the
tenant tables are built by reflecting the master tables: same columns minus
the tenant-scope column, same primary key, and only the foreign keys that
point at another migrated table.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import Column, ForeignKeyConstraint, MetaData, Table, text
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.exceptions import ConfigurationError
from tenancy.services.tables import MIGRATED_TABLES, TableDescriptor

logger = logging.getLogger(__name__)


def build_tenant_metadata(
    master: MetaData, tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES
) -> MetaData:
    """Derive the tenant tables from reflected master tables.

    Raises:
        ConfigurationError: a master foreign key points at a migrated table
            that comes later in the catalog, so copying in catalog order
            would violate it.
    """
    tenant = MetaData()
    migrated = {descriptor.name for descriptor in tables}
    copied: set[str] = set()

    for descriptor in tables:
        source = master.tables[descriptor.name]
        columns = [
            _copy_column(column)
            for column in source.columns
            if column.name != descriptor.scope_column
        ]
        constraints = []
        for fk in source.foreign_key_constraints:
            parent = fk.referred_table.name
            if parent not in migrated or descriptor.scope_column in fk.column_keys:
                continue
            if parent != descriptor.name and parent not in copied:
                raise ConfigurationError(
                    f"Master table {descriptor.name} references {parent} "
                    f"({', '.join(fk.column_keys)}), which is migrated after it; "
                    "reorder the table catalog"
                )
            constraints.append(
                ForeignKeyConstraint(
                    list(fk.column_keys),
                    [f"{parent}.{element.column.name}" for element in fk.elements],
                )
            )
        Table(descriptor.name, tenant, *columns, *constraints)
        copied.add(descriptor.name)

    return tenant


def _copy_column(column: Column) -> Column:
    server_default = None
    if column.server_default is not None:
        default_sql = str(getattr(column.server_default, "arg", ""))
        # serial defaults reference the master's sequence
        if default_sql and "nextval(" not in default_sql:
            server_default = text(default_sql)
    return Column(
        column.name,
        column.type,
        primary_key=column.primary_key,
        nullable=column.nullable,
        server_default=server_default,
    )


class TenantSchema:
    """Reflected master tables plus the tenant tables derived from them.

    Reflection runs once per instance; a job creates one instance and shares
    it across all tenants it processes.
    """

    def __init__(
        self,
        master_engine: AsyncEngine,
        tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES,
    ) -> None:
        self._master_engine = master_engine
        self.tables = tables
        self._master: MetaData | None = None
        self._tenant: MetaData | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        async with self._lock:
            if self._master is not None:
                return
            master = MetaData()
            names = [descriptor.name for descriptor in self.tables]
            async with self._master_engine.connect() as conn:
                await conn.run_sync(lambda sync_conn: master.reflect(bind=sync_conn, only=names))
            self._tenant = build_tenant_metadata(master, self.tables)
            self._master = master
            logger.debug("Reflected %d master tables", len(names))

    async def master_table(self, name: str) -> Table:
        await self.load()
        return self._master.tables[name]

    async def tenant_table(self, name: str) -> Table:
        await self.load()
        return self._tenant.tables[name]

    async def apply(self, tenant_engine: AsyncEngine) -> None:
        """Create missing tenant tables. Existing tables are left untouched."""
        await self.load()
        async with tenant_engine.begin() as conn:
            await conn.run_sync(self._tenant.create_all)
