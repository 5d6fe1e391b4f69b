"""System health endpoint — checks connectivity to the backing services."""

import time

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from tenancy.api.deps import Authorized, Engine, SettingsDep
from tenancy.core.config import Settings
from tenancy.core.database import ping
from tenancy.core.exceptions import ConfigurationError
from tenancy.services.tenant_store import describe_error

router = APIRouter(prefix="/system", tags=["system"], dependencies=[Authorized])


class ServiceHealth(BaseModel):
    status: str  # "ok" or "error"
    detail: str | None = None
    latency_ms: int | None = None


class HealthResponse(BaseModel):
    status: str
    master: ServiceHealth
    encryption: ServiceHealth
    admin_mode: bool
    batch_size: int
    migration_concurrency: int


@router.get("/health", response_model=HealthResponse)
async def system_health(engine: Engine, settings: SettingsDep) -> HealthResponse:
    """Check master database connectivity and registry key configuration."""
    master = await _check_master(engine)
    encryption = _check_encryption(settings)

    overall = "ok" if master.status == "ok" and encryption.status == "ok" else "degraded"
    return HealthResponse(
        status=overall,
        master=master,
        encryption=encryption,
        admin_mode=settings.admin_mode,
        batch_size=settings.batch_size,
        migration_concurrency=settings.migration_concurrency,
    )


async def _check_master(engine) -> ServiceHealth:
    try:
        t0 = time.monotonic()
        await ping(engine)
        latency = int((time.monotonic() - t0) * 1000)
        return ServiceHealth(status="ok", latency_ms=latency)
    except (SQLAlchemyError, OSError) as exc:
        return ServiceHealth(status="error", detail=describe_error(exc))


def _check_encryption(settings: Settings) -> ServiceHealth:
    try:
        settings.require_encryption_key()
    except ConfigurationError as exc:
        return ServiceHealth(status="error", detail=str(exc))
    return ServiceHealth(status="ok")
