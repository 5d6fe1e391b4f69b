"""Bookkeeping models — job runs and per-table migration checkpoints."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, BigInteger, String, Text
from sqlmodel import Column, Field, SQLModel

from tenancy.models.base import UTCDateTime, utcnow


class RunType(StrEnum):
    PROVISION = "provision"
    MIGRATE = "migrate"
    VALIDATE = "validate"


class RunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"


class CheckpointStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationRun(SQLModel, table=True):
    __tablename__ = "migration_runs"

    id: int | None = Field(default=None, primary_key=True)
    run_type: RunType = Field(sa_column=Column(String(20), nullable=False))
    status: RunStatus = Field(
        default=RunStatus.RUNNING, sa_column=Column(String(20), nullable=False)
    )
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    error: str | None = Field(default=None, sa_column=Column(Text))

    # batch size, table list, aggregate counts, failures
    run_metadata: dict = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )


class MigrationState(SQLModel, table=True):
    __tablename__ = "migration_state"

    tenant_shop_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    table_name: str = Field(primary_key=True, max_length=100)
    status: CheckpointStatus = Field(
        default=CheckpointStatus.PENDING, sa_column=Column(String(20), nullable=False)
    )
    last_synced_pk: int = Field(
        default=0, sa_column=Column(BigInteger, nullable=False, server_default="0")
    )
    rows_processed: int = Field(default=0, nullable=False)
    last_synced_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    error: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class MigrationRunRead(SQLModel):
    id: int
    run_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    run_metadata: dict = {}


class MigrationStateRead(SQLModel):
    tenant_shop_id: int
    table_name: str
    status: str
    last_synced_pk: int
    rows_processed: int
    last_synced_at: datetime | None = None
    error: str | None = None
    updated_at: datetime
