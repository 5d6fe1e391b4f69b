"""Error taxonomy for the tenant lifecycle subsystem.

Exceptions are raised for conditions that abort a unit of work (a tenant, a
whole job). Validation findings are not exceptions: they are recorded as
``FailureKind`` entries in a report so a sweep can run to the end.
"""

from enum import StrEnum


class TenancyError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(TenancyError):
    """Required configuration is missing or malformed. Fatal for a job."""


class AdminModeRequired(TenancyError):
    """Elevated operations were attempted outside ADMIN_MODE."""

    def __init__(self, operation: str = "tenant provisioning") -> None:
        super().__init__(
            f"{operation} requires ADMIN_MODE=true; run it from a dedicated "
            "admin container with PostgreSQL superuser credentials"
        )
        self.operation = operation


class ConnectionNotFound(TenancyError):
    """No registry record exists for the shop."""

    def __init__(self, shop_id: int) -> None:
        super().__init__(f"No connection registered for shop {shop_id}")
        self.shop_id = shop_id


class CredentialDecryptionError(TenancyError):
    """Stored credentials could not be authenticated or decoded."""

    def __init__(self, shop_id: int, reason: str = "authentication failed") -> None:
        super().__init__(f"Cannot decrypt credentials for shop {shop_id}: {reason}")
        self.shop_id = shop_id
        self.reason = reason


class ProvisioningFailed(TenancyError):
    """Creating or dropping a tenant database or role failed."""

    def __init__(self, shop_id: int, reason: str) -> None:
        super().__init__(f"Provisioning failed for shop {shop_id}: {reason}")
        self.shop_id = shop_id
        self.reason = reason


class TenantUnreachable(TenancyError):
    """The tenant store refused, timed out, or rejected our credentials."""

    def __init__(self, shop_id: int, reason: str) -> None:
        super().__init__(f"Tenant store for shop {shop_id} is unreachable: {reason}")
        self.shop_id = shop_id
        self.reason = reason


class CheckpointRegression(TenancyError):
    """A checkpoint update tried to move last_synced_pk backwards."""

    def __init__(self, shop_id: int, table_name: str, current: int, proposed: int) -> None:
        super().__init__(
            f"Checkpoint for shop {shop_id} table {table_name} would regress "
            f"from {current} to {proposed}"
        )
        self.shop_id = shop_id
        self.table_name = table_name


class FailureKind(StrEnum):
    """Kinds of recorded (non-raised) per-tenant failures."""

    ROW_COUNT_MISMATCH = "row_count_mismatch"
    ORPHANED_ROWS_DETECTED = "orphaned_rows_detected"
    FOREIGN_ROWS_DETECTED = "foreign_rows_detected"
    TENANT_UNREACHABLE = "tenant_unreachable"
    CONNECTION_NOT_FOUND = "connection_not_found"
    CREDENTIAL_DECRYPTION_ERROR = "credential_decryption_error"
    CHECK_ERROR = "check_error"
