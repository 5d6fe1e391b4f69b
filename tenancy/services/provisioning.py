"""Tenant provisioning — one PostgreSQL database and one role per shop.

Requires superuser-level credentials (``ADMIN_DATABASE_URL``) and refuses to
start unless ``ADMIN_MODE=true``. Only the provision/deprovision CLI commands
construct this service; the status API and the workers never do.

The provisioning flow:
1. Refuse (``ALREADY_PROVISIONED``) if the database or the role exists
2. Create a LOGIN role with a random password and no other privileges
3. Create the database owned by that role, revoke PUBLIC access
4. Apply the tenant schema, connected as the new role
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.config import Settings
from tenancy.core.exceptions import AdminModeRequired, ProvisioningFailed
from tenancy.core.security import generate_password
from tenancy.models.tenant_connection import DEFAULT_PORT, TenantCredentials
from tenancy.services.schema import TenantSchema
from tenancy.services.tenant_store import TenantStoreFactory, describe_error

logger = logging.getLogger(__name__)

# PostgreSQL truncates identifiers beyond NAMEDATALEN - 1
MAX_IDENTIFIER_LENGTH = 63


class ProvisioningOutcome(StrEnum):
    PROVISIONED = "provisioned"
    ALREADY_PROVISIONED = "already_provisioned"


@dataclass
class ProvisioningResult:
    shop_id: int
    outcome: ProvisioningOutcome
    database_name: str
    username: str
    credentials: TenantCredentials | None = None
    database_exists: bool = False
    role_exists: bool = False


class ProvisioningBackend(Protocol):
    """Privileged server operations the provisioning service relies on."""

    def endpoint(self) -> tuple[str, int]: ...

    async def database_exists(self, name: str) -> bool: ...

    async def role_exists(self, name: str) -> bool: ...

    async def create_role(self, name: str, password: str) -> None: ...

    async def set_role_password(self, name: str, password: str) -> None: ...

    async def create_database(self, name: str, owner: str, comment: str = "") -> None: ...

    async def terminate_connections(self, database: str) -> None: ...

    async def drop_database(self, name: str) -> None: ...

    async def drop_role(self, name: str) -> None: ...


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresProvisioningBackend:
    """``ProvisioningBackend`` over a superuser connection.

    DDL cannot take bind parameters, so identifiers go through the dialect's
    identifier quoting and the few string literals are escaped by hand.
    """

    def __init__(self, admin_engine: AsyncEngine) -> None:
        # CREATE/DROP DATABASE cannot run inside a transaction block
        self._engine = admin_engine.execution_options(isolation_level="AUTOCOMMIT")
        self._quote = admin_engine.dialect.identifier_preparer.quote_identifier
        self._url = admin_engine.url

    def endpoint(self) -> tuple[str, int]:
        return self._url.host or "localhost", self._url.port or DEFAULT_PORT

    async def _ddl(self, *statements: str) -> None:
        async with self._engine.connect() as conn:
            for statement in statements:
                await conn.exec_driver_sql(statement)

    async def _exists(self, query: str, name: str) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(text(query), {"name": name})
            return result.first() is not None

    async def database_exists(self, name: str) -> bool:
        return await self._exists("SELECT 1 FROM pg_database WHERE datname = :name", name)

    async def role_exists(self, name: str) -> bool:
        return await self._exists("SELECT 1 FROM pg_roles WHERE rolname = :name", name)

    async def create_role(self, name: str, password: str) -> None:
        await self._ddl(
            f"CREATE ROLE {self._quote(name)} WITH LOGIN NOSUPERUSER NOCREATEDB "
            f"NOCREATEROLE NOREPLICATION PASSWORD {_sql_literal(password)}"
        )

    async def set_role_password(self, name: str, password: str) -> None:
        await self._ddl(f"ALTER ROLE {self._quote(name)} WITH PASSWORD {_sql_literal(password)}")

    async def create_database(self, name: str, owner: str, comment: str = "") -> None:
        database, role = self._quote(name), self._quote(owner)
        statements = [
            f"CREATE DATABASE {database} OWNER {role}",
            f"REVOKE ALL ON DATABASE {database} FROM PUBLIC",
            f"GRANT CONNECT, TEMPORARY ON DATABASE {database} TO {role}",
        ]
        if comment:
            statements.append(f"COMMENT ON DATABASE {database} IS {_sql_literal(comment)}")
        await self._ddl(*statements)

    async def terminate_connections(self, database: str) -> None:
        async with self._engine.connect() as conn:
            await conn.execute(
                text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :name AND pid <> pg_backend_pid()"
                ),
                {"name": database},
            )

    async def drop_database(self, name: str) -> None:
        await self._ddl(f"DROP DATABASE IF EXISTS {self._quote(name)}")

    async def drop_role(self, name: str) -> None:
        await self._ddl(f"DROP ROLE IF EXISTS {self._quote(name)}")


class TenantProvisioningService:
    def __init__(
        self,
        settings: Settings,
        backend: ProvisioningBackend,
        stores: TenantStoreFactory,
        schema: TenantSchema | None = None,
    ) -> None:
        if not settings.admin_mode:
            raise AdminModeRequired()
        self._settings = settings
        self._backend = backend
        self._stores = stores
        self._schema = schema
        logger.info("TenantProvisioningService initialized in ADMIN_MODE")

    def database_name(self, shop_id: int) -> str:
        name = f"{self._settings.tenant_database_prefix}{shop_id}_db"
        return self._checked_identifier(shop_id, name)

    def role_name(self, shop_id: int) -> str:
        return self._checked_identifier(shop_id, f"{self._settings.tenant_user_prefix}{shop_id}")

    async def provision_tenant(self, shop_id: int, display_name: str) -> ProvisioningResult:
        """Create the tenant's database and role; idempotent.

        Returns:
            ``PROVISIONED`` with fresh credentials, or ``ALREADY_PROVISIONED``
            (nothing created) when the database or role exists already.

        Raises:
            ProvisioningFailed: creation failed; whatever this call created
                has been dropped again.
        """
        database, role = self.database_name(shop_id), self.role_name(shop_id)

        try:
            database_exists = await self._backend.database_exists(database)
            role_exists = await self._backend.role_exists(role)
        except SQLAlchemyError as exc:
            raise ProvisioningFailed(shop_id, describe_error(exc)) from exc

        if database_exists or role_exists:
            logger.info(
                "Shop %s already provisioned (database=%s role=%s)",
                shop_id, database_exists, role_exists,
            )
            return ProvisioningResult(
                shop_id=shop_id,
                outcome=ProvisioningOutcome.ALREADY_PROVISIONED,
                database_name=database,
                username=role,
                database_exists=database_exists,
                role_exists=role_exists,
            )

        logger.info("Provisioning tenant database for shop %s: %s", shop_id, display_name)
        password = generate_password()
        created_role = created_database = False
        try:
            await self._backend.create_role(role, password)
            created_role = True
            await self._backend.create_database(database, owner=role, comment=display_name)
            created_database = True

            credentials = self._credentials(database, role, password)
            if self._schema is not None:
                async with self._stores.open(shop_id, credentials) as engine:
                    await self._schema.apply(engine)
        except Exception as exc:
            logger.error("Failed to provision tenant for shop %s: %s", shop_id, describe_error(exc))
            await self._cleanup(
                shop_id,
                database if created_database else None,
                role if created_role else None,
            )
            raise ProvisioningFailed(shop_id, describe_error(exc)) from exc

        logger.info("Provisioned database %s with role %s", database, role)
        return ProvisioningResult(
            shop_id=shop_id,
            outcome=ProvisioningOutcome.PROVISIONED,
            database_name=database,
            username=role,
            credentials=credentials,
            database_exists=True,
            role_exists=True,
        )

    async def recover_credentials(self, shop_id: int) -> TenantCredentials:
        """Rotate the password of an existing tenant role and return new credentials.

        For the case where provisioning succeeded but the credentials never
        reached the registry. Both the database and the role must exist.
        """
        database, role = self.database_name(shop_id), self.role_name(shop_id)
        try:
            if not (
                await self._backend.database_exists(database)
                and await self._backend.role_exists(role)
            ):
                raise ProvisioningFailed(
                    shop_id,
                    "partially provisioned (database or role missing); deprovision first",
                )
            password = generate_password()
            await self._backend.set_role_password(role, password)
        except SQLAlchemyError as exc:
            raise ProvisioningFailed(shop_id, describe_error(exc)) from exc

        logger.warning("Rotated password of role %s to recover lost credentials", role)
        return self._credentials(database, role, password)

    async def deprovision_tenant(self, shop_id: int) -> None:
        """Drop the tenant's database and role. Already-absent counts as success.

        Permanently deletes all data in the tenant store.
        """
        database, role = self.database_name(shop_id), self.role_name(shop_id)
        logger.warning("Deprovisioning tenant database for shop %s", shop_id)
        try:
            await self._backend.terminate_connections(database)
            await self._backend.drop_database(database)
            await self._backend.drop_role(role)
        except SQLAlchemyError as exc:
            raise ProvisioningFailed(shop_id, describe_error(exc)) from exc
        logger.info("Dropped database %s and role %s", database, role)

    async def check_tenant_health(self, shop_id: int, credentials: TenantCredentials) -> bool:
        return await self._stores.check(shop_id, credentials)

    # ── Internals ────────────────────────────────────────────

    def _credentials(self, database: str, role: str, password: str) -> TenantCredentials:
        host, port = self._backend.endpoint()
        return TenantCredentials(
            host=self._settings.tenant_db_host or host,
            port=self._settings.tenant_db_port or port,
            database=database,
            username=role,
            password=password,
        )

    def _checked_identifier(self, shop_id: int, name: str) -> str:
        if len(name) > MAX_IDENTIFIER_LENGTH:
            raise ProvisioningFailed(
                shop_id, f"identifier {name!r} exceeds {MAX_IDENTIFIER_LENGTH} characters"
            )
        return name

    async def _cleanup(self, shop_id: int, database: str | None, role: str | None) -> None:
        """Best-effort removal of resources created by a failed provisioning."""
        try:
            if database is not None:
                await self._backend.terminate_connections(database)
                await self._backend.drop_database(database)
            if role is not None:
                await self._backend.drop_role(role)
        except SQLAlchemyError:
            # the provisioning error is the one worth reporting
            logger.exception("Cleanup after failed provisioning of shop %s failed", shop_id)
