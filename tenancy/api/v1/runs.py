"""Job run history."""

from fastapi import APIRouter, HTTPException, Query, status

from tenancy.api.deps import Authorized, Engine
from tenancy.models.migration import MigrationRun, MigrationRunRead, RunType
from tenancy.services.runs import RunRecorder

router = APIRouter(prefix="/runs", tags=["runs"], dependencies=[Authorized])


def _to_read(run: MigrationRun) -> MigrationRunRead:
    return MigrationRunRead.model_validate(run, from_attributes=True)


@router.get("", response_model=list[MigrationRunRead])
async def list_runs(
    engine: Engine,
    limit: int = Query(default=50, ge=1, le=500),
    run_type: RunType | None = None,
) -> list[MigrationRunRead]:
    """Most recent runs first."""
    runs = await RunRecorder(engine).list_recent(limit=limit, run_type=run_type)
    return [_to_read(run) for run in runs]


@router.get("/{run_id}", response_model=MigrationRunRead)
async def get_run(run_id: int, engine: Engine) -> MigrationRunRead:
    run = await RunRecorder(engine).get(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return _to_read(run)
