"""
Department Migration Service

When a department is removed from a project, its expenses are not
deleted. They are rewritten into the anonymous department so the ledger
reports them under "Other Expenses":

    department            -> "Anonymous Department"
    is_anonymous          -> True
    original_department   -> the removed name
    department_deleted_at -> now
    updated_at            -> now

Amount and status are never touched.

ATOMICITY: one department is one atomic batch. Several departments are
several independent batches; a failure on one leaves the others
committed and is reported in that department's MigrationResult.
"""

import asyncio
from typing import Optional
from uuid import UUID

import structlog

from budget_control.audit import AuditLogger, create_correlation_id
from budget_control.clock import Clock, SystemClock
from budget_control.config import AppSettings, get_settings
from budget_control.errors import (
    BudgetControlError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
    VersionConflictError,
)
from budget_control.models.results import MigrationResult
from budget_control.services.storage import DocumentStore


logger = structlog.get_logger(__name__)


class DepartmentMigrationService:
    """Moves the expenses of removed departments into the anonymous bucket."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().app

    async def migrate_department(
        self,
        project_id: str,
        department_name: str,
        correlation_id: Optional[UUID] = None,
        timeout: Optional[float] = None,
    ) -> MigrationResult:
        """
        Migrate every expense filed under `department_name`, whatever its status.

        Never raises for store or validation failures: they are returned as
        an unsuccessful MigrationResult, and in that case nothing was written.
        With `timeout`, a department that takes longer is reported as a
        transient store error.
        """
        correlation_id = correlation_id or create_correlation_id()
        log = logger.bind(
            project_id=project_id,
            department=department_name,
            correlation_id=str(correlation_id),
        )

        try:
            migrated = await self._within(
                self._migrate(project_id, department_name, log),
                timeout,
                department_name,
            )
        except BudgetControlError as e:
            log.error("department_migration_failed", error=e.message, kind=e.kind.value)
            await self._audit.log_department_migration_failed(
                project_id=project_id,
                department=department_name,
                error_code=e.kind.value,
                error_message=e.message,
                correlation_id=correlation_id,
            )
            return MigrationResult(
                project_id=project_id,
                department=department_name,
                success=False,
                error_kind=e.kind,
                error_message=e.message,
            )

        log.info("department_migrated", expense_count=len(migrated))
        await self._audit.log_department_migrated(
            project_id=project_id,
            department=department_name,
            expense_ids=migrated,
            correlation_id=correlation_id,
        )
        return MigrationResult(
            project_id=project_id,
            department=department_name,
            success=True,
            migrated_expense_ids=migrated,
            migrated_at=self._clock.now(),
        )

    async def migrate_departments(
        self,
        project_id: str,
        department_names: list[str],
        correlation_id: Optional[UUID] = None,
        timeout: Optional[float] = None,
    ) -> list[MigrationResult]:
        """
        Migrate several departments one batch at a time, in the given order.

        `timeout` bounds each department separately, so an expiry on one
        never hides the batches already committed.
        """
        correlation_id = correlation_id or create_correlation_id()
        return [
            await self.migrate_department(project_id, name, correlation_id, timeout)
            for name in department_names
        ]

    async def _within(self, awaitable, timeout: Optional[float], department_name: str):
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientStoreError(
                f"Migration of department '{department_name}' timed out after {timeout}s"
            )

    async def _migrate(self, project_id: str, department_name: str, log) -> list[str]:
        anonymous = self._settings.anonymous_department_name
        if not department_name or not department_name.strip():
            raise ValidationError("Department name is required")
        if department_name == anonymous:
            raise ValidationError(f"'{anonymous}' cannot be migrated")
        if await self._store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        attempts = self._settings.max_conflict_retries
        attempt = 0
        while True:
            expenses = await self._store.list_expenses(project_id, department=department_name)
            if not expenses:
                return []

            now = self._clock.now()
            batch = [
                expense.model_copy(update={
                    "department": anonymous,
                    "is_anonymous": True,
                    "original_department": department_name,
                    "department_deleted_at": now,
                    "updated_at": now,
                })
                for expense in expenses
            ]
            try:
                saved = await self._store.update_expenses_atomically(batch)
            except VersionConflictError:
                # An expense was approved or rejected meanwhile; rebuild the batch
                if attempt >= attempts:
                    raise
                attempt += 1
                log.info("migration_conflict_retry", attempt=attempt)
                continue
            return [expense.id for expense in saved]
