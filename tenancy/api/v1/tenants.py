"""Registered shops, their migration progress and store reachability.

Nothing here returns credential material; the health probe decrypts
credentials in-process only to open a connection.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from sqlmodel import select

from tenancy.api.deps import Authorized, Engine, Session, SettingsDep, TenantStores
from tenancy.core.exceptions import ConfigurationError, CredentialDecryptionError
from tenancy.models.migration import CheckpointStatus, MigrationState, MigrationStateRead
from tenancy.models.tenant_connection import TenantConnection, TenantConnectionRead
from tenancy.services.registry import ConnectionRegistry

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Authorized])


class TenantSummary(TenantConnectionRead):
    tables_completed: int = 0
    tables_failed: int = 0
    rows_processed: int = 0
    last_synced_at: datetime | None = None


class TenantHealth(BaseModel):
    shop_id: int
    status: str  # "ok", "unreachable", "credential_error"
    detail: str | None = None


@router.get("", response_model=list[TenantSummary])
async def list_tenants(session: Session) -> list[TenantSummary]:
    connections = (
        await session.execute(select(TenantConnection).order_by(TenantConnection.shop_id))
    ).scalars().all()
    checkpoints = (await session.execute(select(MigrationState))).scalars().all()

    summaries = {
        row.shop_id: TenantSummary(
            shop_id=row.shop_id,
            is_active=row.is_active,
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_used_at=row.last_used_at,
        )
        for row in connections
    }
    for state in checkpoints:
        summary = summaries.get(state.tenant_shop_id)
        if summary is None:
            continue
        if state.status == CheckpointStatus.COMPLETED:
            summary.tables_completed += 1
        elif state.status == CheckpointStatus.FAILED:
            summary.tables_failed += 1
        summary.rows_processed += state.rows_processed
        if state.last_synced_at and (
            summary.last_synced_at is None or state.last_synced_at > summary.last_synced_at
        ):
            summary.last_synced_at = state.last_synced_at
    return list(summaries.values())


@router.get("/{shop_id}/checkpoints", response_model=list[MigrationStateRead])
async def list_checkpoints(shop_id: int, session: Session) -> list[MigrationStateRead]:
    result = await session.execute(
        select(MigrationState)
        .where(MigrationState.tenant_shop_id == shop_id)
        .order_by(MigrationState.table_name)
    )
    return [
        MigrationStateRead.model_validate(state, from_attributes=True)
        for state in result.scalars().all()
    ]


@router.get("/{shop_id}/health", response_model=TenantHealth)
async def tenant_health(
    shop_id: int, engine: Engine, settings: SettingsDep, stores: TenantStores
) -> TenantHealth:
    """Open a connection to the shop's store within TENANT_CONNECT_TIMEOUT."""
    try:
        registry = ConnectionRegistry.from_settings(engine, settings)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc

    try:
        credentials = await registry.get_connection(shop_id)
    except CredentialDecryptionError as exc:
        return TenantHealth(shop_id=shop_id, status="credential_error", detail=exc.reason)
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Shop has no registered connection"
        )

    if await stores.check(shop_id, credentials):
        return TenantHealth(shop_id=shop_id, status="ok")
    return TenantHealth(shop_id=shop_id, status="unreachable")
