"""Catalog of tenant-scoped business tables.

This tuple is the only source of table and column names used in generated
SQL. It is ordered so that every table comes after the tables it references;
the migration engine copies in this order and ``check_dependency_order``
guards the invariant.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_PK_COLUMN = "id"
DEFAULT_SCOPE_COLUMN = "shop_id"


@dataclass(frozen=True)
class ForeignKeyRef:
    """``column`` in the owning table points at ``parent``'s primary key."""

    column: str
    parent: str


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    pk_column: str = DEFAULT_PK_COLUMN
    scope_column: str = DEFAULT_SCOPE_COLUMN
    references: tuple[ForeignKeyRef, ...] = field(default_factory=tuple)

    @property
    def parents(self) -> tuple[str, ...]:
        return tuple(ref.parent for ref in self.references)


MIGRATED_TABLES: tuple[TableDescriptor, ...] = (
    TableDescriptor("customers"),
    TableDescriptor("loaner_devices"),
    TableDescriptor(
        "repairs",
        references=(
            ForeignKeyRef("customer_id", "customers"),
            ForeignKeyRef("loaner_device_id", "loaner_devices"),
        ),
    ),
    TableDescriptor(
        "repair_status_history", references=(ForeignKeyRef("repair_id", "repairs"),)
    ),
    TableDescriptor("spare_parts", references=(ForeignKeyRef("repair_id", "repairs"),)),
    TableDescriptor(
        "cost_estimates", references=(ForeignKeyRef("customer_id", "customers"),)
    ),
    TableDescriptor("orders", references=(ForeignKeyRef("customer_id", "customers"),)),
    TableDescriptor("email_history", references=(ForeignKeyRef("repair_id", "repairs"),)),
    TableDescriptor("qr_codes"),
    TableDescriptor("signatures", references=(ForeignKeyRef("repair_id", "repairs"),)),
    TableDescriptor("kiosk_devices"),
    TableDescriptor("error_catalog_entries"),
)


def check_dependency_order(tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES) -> None:
    """Raise ValueError unless every referenced parent precedes its child."""
    seen: set[str] = set()
    for descriptor in tables:
        if descriptor.name in seen:
            raise ValueError(f"Table {descriptor.name} is listed twice")
        for parent in descriptor.parents:
            if parent == descriptor.name:
                continue
            if parent not in seen:
                raise ValueError(
                    f"Table {descriptor.name} references {parent}, which is not "
                    "migrated before it"
                )
        seen.add(descriptor.name)


def table_by_name(
    name: str, tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES
) -> TableDescriptor:
    for descriptor in tables:
        if descriptor.name == name:
            return descriptor
    raise KeyError(name)


def strip_scope_column(record: dict, descriptor: TableDescriptor) -> dict:
    """Drop the tenant-scope column; the tenant store holds one tenant only."""
    return {key: value for key, value in record.items() if key != descriptor.scope_column}


check_dependency_order()
