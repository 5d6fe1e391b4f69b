"""Async engine factories, session factory and dialect helpers.

Engines are created explicitly and handed to the components that need them;
each job opens its engines with ``open_engine`` and disposes them on exit.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql.expression import TableClause
from sqlmodel import SQLModel

from tenancy.models.migration import MigrationRun, MigrationState
from tenancy.models.tenant_connection import TenantConnection

BOOKKEEPING_MODELS = (TenantConnection, MigrationRun, MigrationState)


def create_engine_for(url: str | URL, **connect_args) -> AsyncEngine:
    """Create an async engine with pool settings suited to the URL's dialect."""
    if make_url(url).get_backend_name() == "sqlite":
        return create_async_engine(url, echo=False, connect_args=connect_args)
    return create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def open_engine(url: str) -> AsyncIterator[AsyncEngine]:
    """Scoped engine: disposed (all pooled connections closed) on exit."""
    engine = create_engine_for(url)
    try:
        yield engine
    finally:
        await engine.dispose()


async def ping(engine: AsyncEngine) -> None:
    """Round-trip ``SELECT 1``; raises whatever the driver raises."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def init_bookkeeping(engine: AsyncEngine) -> None:
    """Create the registry, run and checkpoint tables. Use Alembic in production."""
    tables = [model.__table__ for model in BOOKKEEPING_MODELS]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=tables)


def upsert_insert(table: TableClause, dialect_name: str):
    """Dialect-specific INSERT that supports ``ON CONFLICT`` clauses."""
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect_name}")
