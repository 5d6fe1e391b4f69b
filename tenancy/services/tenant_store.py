"""Connections to dedicated tenant stores."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.config import Settings
from tenancy.core.database import create_engine_for, ping
from tenancy.core.exceptions import TenantUnreachable
from tenancy.models.tenant_connection import TenantCredentials

logger = logging.getLogger(__name__)

T = TypeVar("T")


def describe_error(exc: BaseException) -> str:
    """One-line, credential-free description of a driver error."""
    if isinstance(exc, TimeoutError):
        return "connection timed out"
    message = str(exc).strip().splitlines()
    first = message[0] if message else ""
    return f"{type(exc).__name__}: {first}"[:300]


class TenantStoreFactory:
    """Opens short-lived engines to tenant databases.

    Every engine is probed with ``SELECT 1`` under ``connect_timeout`` before
    it is handed out, so an unreachable tenant fails fast with
    ``TenantUnreachable`` instead of stalling a whole job. Work done on an
    open store goes through ``bounded()``, which applies the same rule to a
    store that stops answering mid-job.
    """

    def __init__(
        self,
        drivername: str = "postgresql+asyncpg",
        connect_timeout: float = 10.0,
        statement_timeout: float = 300.0,
    ) -> None:
        self.drivername = drivername
        self.connect_timeout = connect_timeout
        self.statement_timeout = statement_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> TenantStoreFactory:
        return cls(
            drivername=settings.tenant_db_driver,
            connect_timeout=settings.tenant_connect_timeout,
            statement_timeout=settings.tenant_statement_timeout,
        )

    def url_for(self, credentials: TenantCredentials) -> URL:
        return credentials.to_url(self.drivername)

    def connect_args(self) -> dict:
        # asyncpg and aiosqlite both take ``timeout`` (seconds)
        args = {"timeout": self.connect_timeout}
        if self.drivername.endswith("+asyncpg"):
            args["command_timeout"] = self.statement_timeout
        return args

    def create_engine(self, credentials: TenantCredentials) -> AsyncEngine:
        return create_engine_for(self.url_for(credentials), **self.connect_args())

    @asynccontextmanager
    async def open(
        self, shop_id: int, credentials: TenantCredentials
    ) -> AsyncIterator[AsyncEngine]:
        engine = self.create_engine(credentials)
        try:
            await asyncio.wait_for(ping(engine), timeout=self.connect_timeout)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            await engine.dispose()
            logger.warning("Tenant store for shop %s unreachable: %s", shop_id, describe_error(exc))
            raise TenantUnreachable(shop_id, describe_error(exc)) from exc

        try:
            yield engine
        finally:
            await engine.dispose()

    async def check(self, shop_id: int, credentials: TenantCredentials) -> bool:
        """True if the tenant store accepts a connection within the timeout."""
        try:
            async with self.open(shop_id, credentials):
                return True
        except TenantUnreachable:
            return False

    async def bounded(self, shop_id: int, operation: Awaitable[T]) -> T:
        """Await one unit of tenant-store work, giving up after ``statement_timeout``."""
        try:
            return await asyncio.wait_for(operation, timeout=self.statement_timeout)
        except TimeoutError as exc:
            logger.warning(
                "Tenant store for shop %s stopped responding after %ss",
                shop_id, self.statement_timeout,
            )
            raise TenantUnreachable(
                shop_id, f"no response within {self.statement_timeout:g}s"
            ) from exc
