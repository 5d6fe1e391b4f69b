"""Job run bookkeeping in ``migration_runs``."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select

from tenancy.core.database import make_session_factory
from tenancy.models.base import utcnow
from tenancy.models.migration import MigrationRun, RunStatus, RunType


class RunRecorder:
    def __init__(self, engine: AsyncEngine) -> None:
        self._session_factory = make_session_factory(engine)

    async def start(self, run_type: RunType, metadata: dict | None = None) -> MigrationRun:
        run = MigrationRun(
            run_type=run_type,
            status=RunStatus.RUNNING,
            run_metadata=metadata or {},
        )
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def complete(
        self, run_id: int, metadata: dict, error: str | None = None
    ) -> MigrationRun:
        async with self._session_factory() as session:
            run = await session.get(MigrationRun, run_id)
            run.status = RunStatus.COMPLETED
            run.completed_at = utcnow()
            run.run_metadata = metadata
            run.error = error
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def get(self, run_id: int) -> MigrationRun | None:
        async with self._session_factory() as session:
            return await session.get(MigrationRun, run_id)

    async def list_recent(
        self, limit: int = 50, run_type: RunType | None = None
    ) -> list[MigrationRun]:
        stmt = select(MigrationRun).order_by(MigrationRun.id.desc())  # type: ignore[union-attr]
        stmt = stmt.limit(limit)
        if run_type is not None:
            stmt = stmt.where(MigrationRun.run_type == run_type)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
