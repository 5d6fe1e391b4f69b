"""Per-(shop, table) migration checkpoints in ``migration_state``.

State machine: ``pending → in_progress → completed``, with ``failed`` set by
the orchestrator when a tenant hits an unrecoverable error. ``in_progress``
and ``failed`` rows resume from their stored position on the next run.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from tenancy.core.database import make_session_factory, upsert_insert
from tenancy.core.exceptions import CheckpointRegression
from tenancy.models.base import utcnow
from tenancy.models.migration import CheckpointStatus, MigrationState

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class CheckpointStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = make_session_factory(engine)

    async def load(self, shop_id: int, table_name: str) -> MigrationState | None:
        async with self._session_factory() as session:
            return await session.get(MigrationState, (shop_id, table_name))

    async def list_for_tenant(self, shop_id: int) -> list[MigrationState]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MigrationState)
                .where(MigrationState.tenant_shop_id == shop_id)
                .order_by(MigrationState.table_name)
            )
            return list(result.scalars().all())

    async def list_all(self) -> list[MigrationState]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MigrationState).order_by(
                    MigrationState.tenant_shop_id, MigrationState.table_name
                )
            )
            return list(result.scalars().all())

    async def begin(self, shop_id: int, table_name: str) -> MigrationState:
        """Mark in_progress, creating the row at position 0 if needed.

        An existing position is kept: this is how a restart resumes.
        """
        await self._upsert_status(shop_id, table_name, CheckpointStatus.IN_PROGRESS, error=None)
        return await self.load(shop_id, table_name)

    async def advance(self, shop_id: int, table_name: str, last_pk: int, batch_rows: int) -> None:
        """Record a durably written batch ending at ``last_pk``."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(MigrationState)
                .where(
                    MigrationState.tenant_shop_id == shop_id,
                    MigrationState.table_name == table_name,
                    MigrationState.last_synced_pk <= last_pk,
                )
                .values(
                    last_synced_pk=last_pk,
                    rows_processed=MigrationState.rows_processed + batch_rows,
                    last_synced_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

        if result.rowcount == 0:
            current = await self.load(shop_id, table_name)
            raise CheckpointRegression(
                shop_id, table_name, current.last_synced_pk if current else -1, last_pk
            )

    async def complete(self, shop_id: int, table_name: str) -> None:
        await self._upsert_status(shop_id, table_name, CheckpointStatus.COMPLETED, error=None)

    async def fail(self, shop_id: int, table_name: str, error: str) -> None:
        await self._upsert_status(
            shop_id, table_name, CheckpointStatus.FAILED, error=error[:MAX_ERROR_LENGTH]
        )

    async def clear_tenant(self, shop_id: int) -> None:
        """Forget all progress for a shop (after its store was dropped)."""
        async with self._session_factory() as session:
            await session.execute(
                delete(MigrationState).where(MigrationState.tenant_shop_id == shop_id)
            )
            await session.commit()
        logger.info("Cleared migration checkpoints for shop %s", shop_id)

    async def _upsert_status(
        self,
        shop_id: int,
        table_name: str,
        status: CheckpointStatus,
        error: str | None,
    ) -> None:
        now = utcnow()
        table = MigrationState.__table__
        async with self._session_factory() as session:
            stmt = upsert_insert(table, session.bind.dialect.name).values(
                tenant_shop_id=shop_id,
                table_name=table_name,
                status=status.value,
                last_synced_pk=0,
                rows_processed=0,
                error=error,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.tenant_shop_id, table.c.table_name],
                set_={"status": status.value, "error": error, "updated_at": now},
            )
            await session.execute(stmt)
            await session.commit()
