"""Validation engine — compares each tenant store against the master.

Checks never raise for data problems: every mismatch is recorded on the
tenant's report and the job decides the exit status once all tenants have
been checked.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import column, func, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenancy.core.exceptions import (
    ConnectionNotFound,
    CredentialDecryptionError,
    FailureKind,
    TenantUnreachable,
)
from tenancy.models.migration import RunType
from tenancy.services.registry import ConnectionRegistry
from tenancy.services.runs import RunRecorder
from tenancy.services.tables import MIGRATED_TABLES, TableDescriptor, table_by_name
from tenancy.services.tenant_store import TenantStoreFactory, describe_error

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True)
class CheckFailure:
    kind: FailureKind
    table: str | None
    detail: str
    master_count: int | None = None
    tenant_count: int | None = None

    def as_dict(self) -> dict:
        data = {"kind": self.kind.value, "table": self.table, "detail": self.detail}
        if self.master_count is not None:
            data["master_count"] = self.master_count
            data["tenant_count"] = self.tenant_count
        return data


@dataclass
class TenantValidationReport:
    shop_id: int
    checks_run: int = 0
    passed: int = 0
    failures: list[CheckFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_pass(self) -> None:
        self.checks_run += 1
        self.passed += 1

    def record_failure(self, failure: CheckFailure) -> None:
        self.checks_run += 1
        self.failures.append(failure)

    def failures_of(self, kind: FailureKind) -> list[CheckFailure]:
        return [failure for failure in self.failures if failure.kind == kind]


@dataclass
class ValidationSummary:
    run_id: int
    reports: list[TenantValidationReport]

    @property
    def total_checks(self) -> int:
        return sum(report.checks_run for report in self.reports)

    @property
    def passed(self) -> int:
        return sum(report.passed for report in self.reports)

    @property
    def failed(self) -> int:
        return sum(report.failed for report in self.reports)

    @property
    def ok(self) -> bool:
        return self.failed == 0


def _table_clause(descriptor: TableDescriptor, *extra: str):
    names = dict.fromkeys((descriptor.pk_column, *extra))
    return table(descriptor.name, *(column(name) for name in names))


class ValidationEngine:
    def __init__(
        self,
        master_engine: AsyncEngine,
        registry: ConnectionRegistry,
        stores: TenantStoreFactory,
        runs: RunRecorder,
        *,
        tables: tuple[TableDescriptor, ...] = MIGRATED_TABLES,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._master_engine = master_engine
        self._registry = registry
        self._stores = stores
        self._runs = runs
        self.tables = tables
        self.page_size = page_size

    async def validate_all(
        self,
        shop_ids: list[int] | None = None,
        on_report: Callable[[TenantValidationReport], None] | None = None,
    ) -> ValidationSummary:
        table_names = [descriptor.name for descriptor in self.tables]
        run = await self._runs.start(RunType.VALIDATE, {"tables": table_names})
        if shop_ids is None:
            shop_ids = await self._registry.get_all_shop_ids()

        reports: list[TenantValidationReport] = []
        try:
            for shop_id in shop_ids:
                report = await self.validate_tenant(shop_id)
                reports.append(report)
                if on_report is not None:
                    on_report(report)
        except Exception as exc:
            await self._runs.complete(run.id, {"tables": table_names}, error=describe_error(exc))
            raise

        summary = ValidationSummary(run_id=run.id, reports=reports)
        await self._runs.complete(
            run.id,
            {
                "tables": table_names,
                "tenants_validated": len(reports),
                "total_checks": summary.total_checks,
                "passed": summary.passed,
                "failed": summary.failed,
                "failures": [
                    {"shop_id": report.shop_id, **failure.as_dict()}
                    for report in reports
                    for failure in report.failures
                ],
            },
        )
        logger.info(
            "Validation run %s completed: %d checks, %d failed",
            run.id, summary.total_checks, summary.failed,
        )
        return summary

    async def validate_tenant(self, shop_id: int) -> TenantValidationReport:
        report = TenantValidationReport(shop_id=shop_id)
        try:
            credentials = await self._registry.require_connection(shop_id)
            async with self._stores.open(shop_id, credentials) as tenant_engine:
                for descriptor in self.tables:
                    await self._check_table(report, shop_id, descriptor, tenant_engine)
        except ConnectionNotFound as exc:
            report.record_failure(CheckFailure(FailureKind.CONNECTION_NOT_FOUND, None, str(exc)))
        except CredentialDecryptionError as exc:
            report.record_failure(
                CheckFailure(FailureKind.CREDENTIAL_DECRYPTION_ERROR, None, str(exc))
            )
        except TenantUnreachable as exc:
            report.record_failure(CheckFailure(FailureKind.TENANT_UNREACHABLE, None, str(exc)))

        if report.ok:
            logger.info("Shop %s passed %d checks", shop_id, report.checks_run)
        else:
            logger.warning(
                "Shop %s failed %d of %d checks", shop_id, report.failed, report.checks_run
            )
        return report

    # ── Checks ───────────────────────────────────────────────

    async def _check_table(
        self,
        report: TenantValidationReport,
        shop_id: int,
        descriptor: TableDescriptor,
        tenant_engine: AsyncEngine,
    ) -> None:
        checks = [self._check_row_count, self._check_foreign_rows]
        checks.extend(self._orphan_check(ref) for ref in descriptor.references)

        for check in checks:
            try:
                failure = await self._stores.bounded(
                    shop_id, check(shop_id, descriptor, tenant_engine)
                )
            except SQLAlchemyError as exc:
                failure = CheckFailure(
                    FailureKind.CHECK_ERROR, descriptor.name, describe_error(exc)
                )
            if failure is None:
                report.record_pass()
            else:
                report.record_failure(failure)

    async def _check_row_count(
        self, shop_id: int, descriptor: TableDescriptor, tenant_engine: AsyncEngine
    ) -> CheckFailure | None:
        source = _table_clause(descriptor, descriptor.scope_column)
        target = _table_clause(descriptor)
        async with self._master_engine.connect() as conn:
            master_count = await conn.scalar(
                select(func.count())
                .select_from(source)
                .where(source.c[descriptor.scope_column] == shop_id)
            )
        async with tenant_engine.connect() as conn:
            tenant_count = await conn.scalar(select(func.count()).select_from(target))

        if master_count == tenant_count:
            return None
        return CheckFailure(
            FailureKind.ROW_COUNT_MISMATCH,
            descriptor.name,
            f"master has {master_count} rows, tenant store has {tenant_count}",
            master_count=master_count,
            tenant_count=tenant_count,
        )

    def _orphan_check(self, ref):
        async def _check(
            shop_id: int, descriptor: TableDescriptor, tenant_engine: AsyncEngine
        ) -> CheckFailure | None:
            parent_descriptor = table_by_name(ref.parent, self.tables)
            child = _table_clause(descriptor, ref.column)
            parent = _table_clause(parent_descriptor)
            parent_pk = parent.c[parent_descriptor.pk_column]
            stmt = (
                select(func.count())
                .select_from(child.outerjoin(parent, child.c[ref.column] == parent_pk))
                .where(child.c[ref.column].is_not(None), parent_pk.is_(None))
            )
            async with tenant_engine.connect() as conn:
                orphans = await conn.scalar(stmt)
            if not orphans:
                return None
            return CheckFailure(
                FailureKind.ORPHANED_ROWS_DETECTED,
                descriptor.name,
                f"{orphans} rows reference a missing {ref.parent} row via {ref.column}",
            )

        return _check

    async def _check_foreign_rows(
        self, shop_id: int, descriptor: TableDescriptor, tenant_engine: AsyncEngine
    ) -> CheckFailure | None:
        """Every tenant key must exist in master under the same shop."""
        target = _table_clause(descriptor)
        source = _table_clause(descriptor, descriptor.scope_column)
        target_pk = target.c[descriptor.pk_column]
        source_pk = source.c[descriptor.pk_column]

        foreign = 0
        cursor = None
        async with tenant_engine.connect() as tenant_conn:
            while True:
                stmt = select(target_pk).order_by(target_pk).limit(self.page_size)
                if cursor is not None:
                    stmt = stmt.where(target_pk > cursor)
                keys = list((await tenant_conn.execute(stmt)).scalars())
                if not keys:
                    break
                async with self._master_engine.connect() as master_conn:
                    known = await master_conn.scalar(
                        select(func.count())
                        .select_from(source)
                        .where(
                            source.c[descriptor.scope_column] == shop_id,
                            source_pk.in_(keys),
                        )
                    )
                foreign += len(keys) - known
                cursor = keys[-1]

        if not foreign:
            return None
        return CheckFailure(
            FailureKind.FOREIGN_ROWS_DETECTED,
            descriptor.name,
            f"{foreign} rows are not owned by shop {shop_id} in master",
        )
