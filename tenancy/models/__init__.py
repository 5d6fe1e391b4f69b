"""Import all models so SQLModel.metadata picks them up."""

from tenancy.models.migration import (
    CheckpointStatus,
    MigrationRun,
    MigrationRunRead,
    MigrationState,
    MigrationStateRead,
    RunStatus,
    RunType,
)
from tenancy.models.shop import Shop
from tenancy.models.tenant_connection import (
    TenantConnection,
    TenantConnectionRead,
    TenantCredentials,
)

__all__ = [
    "CheckpointStatus",
    "MigrationRun",
    "MigrationRunRead",
    "MigrationState",
    "MigrationStateRead",
    "RunStatus",
    "RunType",
    "Shop",
    "TenantConnection",
    "TenantConnectionRead",
    "TenantCredentials",
]
