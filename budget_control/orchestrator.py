"""
Core Facade for Budget Control

This module ties together all the components and exposes the operations
the API/UI layer consumes:
1. Ledger reads (department budgets, project totals)
2. Authority resolution (who may approve right now)
3. Expense submission and approve/reject, single and bulk
4. Project edits, including department migration
5. Delegation lifecycle

DESIGN DECISION: The facade is the boundary. It is the only place that
imposes a timeout on store-backed work, and expiry is reported as
TransientStoreError, never as success or failure of the operation.
Nothing here retries on its own; callers opt in with retry_transient().
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from budget_control.audit import AuditLogger, configure_logging
from budget_control.clock import Clock, SystemClock
from budget_control.config import AppSettings, get_settings
from budget_control.delegation import DelegationService, resolve_authority
from budget_control.errors import NotFoundError, TransientStoreError
from budget_control.expenses import ExpenseStateMachine
from budget_control.ledger import compute_department_budgets, summarize_project_budget
from budget_control.migration import DepartmentMigrationService
from budget_control.models.delegation import AuthoritySet, DelegationRecord, DelegationView
from budget_control.models.expense import Expense
from budget_control.models.project import DepartmentBudget, Project, ProjectBudgetSummary
from budget_control.models.results import (
    BulkTransitionResult,
    MigrationResult,
    ProjectEditResult,
)
from budget_control.projects import ProjectService
from budget_control.services.storage import (
    DocumentStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
)
from budget_control.validation import CoreValidator


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BudgetControlCore:
    """
    Entry point for the budget control core.

    Every caller-facing mutation takes the caller identity explicitly.
    There is no default caller.
    """

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
        self._validator = CoreValidator(self._settings)

        self.delegations = DelegationService(
            store, clock=self._clock, audit_logger=self._audit, settings=self._settings
        )
        self.expenses = ExpenseStateMachine(
            store,
            clock=self._clock,
            audit_logger=self._audit,
            settings=self._settings,
            delegation_service=self.delegations,
        )
        self.migration = DepartmentMigrationService(
            store, clock=self._clock, audit_logger=self._audit, settings=self._settings
        )
        self.projects = ProjectService(
            store,
            clock=self._clock,
            audit_logger=self._audit,
            settings=self._settings,
            migration_service=self.migration,
        )

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def _bounded(self, awaitable: Awaitable[T], operation: str) -> T:
        timeout = self._settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("store_timeout", operation=operation, timeout=timeout)
            raise TransientStoreError(f"{operation} timed out after {timeout}s")

    # -------------------------------------------------------------------------
    # Pure computations
    # -------------------------------------------------------------------------

    def compute_department_budgets(
        self,
        project: Project,
        expenses: list[Expense],
    ) -> list[DepartmentBudget]:
        return compute_department_budgets(
            project, expenses, other_label=self._settings.other_expenses_label
        )

    def resolve_authority(
        self,
        project: Project,
        delegation_records: list[DelegationRecord],
        as_of: datetime,
    ) -> AuthoritySet:
        return resolve_authority(project, delegation_records, as_of)

    # -------------------------------------------------------------------------
    # Store-backed reads
    # -------------------------------------------------------------------------

    async def department_budgets(self, project_id: str) -> list[DepartmentBudget]:
        """Load a project and its expenses, then compute the ledger."""
        async def load():
            project = await self._store.get_project(project_id)
            if project is None:
                raise NotFoundError("Project", project_id)
            return project, await self._store.list_expenses(project_id)

        project, expenses = await self._bounded(load(), "department_budgets")
        return self.compute_department_budgets(project, expenses)

    async def budget_summary(self, project_id: str) -> ProjectBudgetSummary:
        project = await self._bounded(self.projects.get_project(project_id), "budget_summary")
        expenses = await self._bounded(
            self._store.list_expenses(project_id), "budget_summary"
        )
        return summarize_project_budget(project, expenses)

    async def current_authority(self, project_id: str) -> AuthoritySet:
        return await self._bounded(
            self.delegations.current_authority(project_id), "current_authority"
        )

    async def list_delegations(self, project_id: str) -> list[DelegationView]:
        return await self._bounded(
            self.delegations.list_delegations(project_id), "list_delegations"
        )

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def submit_expense(
        self,
        project_id: str,
        department: str,
        amount: Any,
        caller_id: str,
        caller_role: Any,
        **details: Any,
    ) -> Expense:
        return await self._bounded(
            self.expenses.submit_expense(
                project_id, department, amount, caller_id, caller_role, **details
            ),
            "submit_expense",
        )

    async def pending_approvals(
        self,
        caller_id: str,
        caller_role: Any,
        department: Optional[str] = None,
    ) -> list[Expense]:
        return await self._bounded(
            self.expenses.pending_approvals(caller_id, caller_role, department),
            "pending_approvals",
        )

    async def transition_expense(
        self,
        expense_id: str,
        target: Any,
        caller_id: str,
        caller_role: Any,
        remark: Optional[str] = None,
    ) -> Expense:
        return await self._bounded(
            self.expenses.transition(expense_id, target, caller_id, caller_role, remark),
            "transition_expense",
        )

    async def transition_expenses(
        self,
        expense_ids: list[str],
        target: Any,
        caller_id: str,
        caller_role: Any,
        remark: Optional[str] = None,
    ) -> BulkTransitionResult:
        """
        Bulk approve/reject.

        The timeout applies to each expense separately, so an expiry shows
        up as one TRANSIENT_STORE_ERROR outcome instead of hiding the
        outcomes already reached.
        """
        return await self.expenses.transition_many(
            expense_ids,
            target,
            caller_id,
            caller_role,
            remark,
            item_timeout=self._settings.store_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Projects and departments
    # -------------------------------------------------------------------------

    async def create_project(self, caller_id: str, caller_role: Any, **fields: Any) -> Project:
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self._bounded(
            self.projects.create_project(caller, **fields), "create_project"
        )

    async def update_project(
        self,
        project_id: str,
        caller_id: str,
        caller_role: Any,
        **changes: Any,
    ) -> ProjectEditResult:
        """
        Apply a project edit.

        The timeout applies to each department migration batch separately.
        A batch that expires becomes a failed MigrationResult and the edit
        is still saved, so committed migrations are never hidden behind a
        bare timeout.
        """
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self.projects.update_project(
            project_id,
            caller,
            migration_timeout=self._settings.store_timeout_seconds,
            **changes,
        )

    async def migrate_department(
        self,
        project_id: str,
        department_name: str,
    ) -> MigrationResult:
        return await self.migration.migrate_department(
            project_id,
            department_name,
            timeout=self._settings.store_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Delegations
    # -------------------------------------------------------------------------

    async def grant_delegation(
        self,
        project_id: str,
        approver_id: str,
        start_date: datetime,
        end_date: datetime,
        caller_id: str,
        caller_role: Any,
    ) -> DelegationRecord:
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self._bounded(
            self.delegations.grant_delegation(
                project_id, approver_id, start_date, end_date, caller
            ),
            "grant_delegation",
        )

    async def accept_delegation(
        self,
        project_id: str,
        delegation_id: str,
        caller_id: str,
        caller_role: Any,
    ) -> DelegationRecord:
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self._bounded(
            self.delegations.accept_delegation(project_id, delegation_id, caller),
            "accept_delegation",
        )

    async def reject_delegation(
        self,
        project_id: str,
        delegation_id: str,
        reason: str,
        caller_id: str,
        caller_role: Any,
    ) -> DelegationRecord:
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self._bounded(
            self.delegations.reject_delegation(project_id, delegation_id, caller, reason),
            "reject_delegation",
        )

    async def detach_delegate(
        self,
        project_id: str,
        caller_id: str,
        caller_role: Any,
    ) -> Project:
        caller = self._validator.require_caller(caller_id, caller_role)
        return await self._bounded(
            self.delegations.detach_delegate(project_id, caller),
            "detach_delegate",
        )


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    min_wait: float = 2,
    max_wait: float = 10,
) -> T:
    """
    Run `operation` again while it fails with TransientStoreError.

    Opt-in, for callers at the boundary. Any other error, or the last
    transient one, is re-raised unchanged.

    Usage:
        await retry_transient(lambda: core.transition_expense(...))
    """
    attempts = attempts or get_settings().app.transient_retry_attempts
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        reraise=True,
    ):
        with attempt:
            return await operation()


def create_core(
    use_storage: bool = True,
    clock: Optional[Clock] = None,
) -> BudgetControlCore:
    """
    Factory function to create the core with its storage.

    Args:
        use_storage: Whether to use Google Sheets storage.
                    Set to False for local runs against an in-memory store.
    """
    configure_logging()
    store: DocumentStore
    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            store = GoogleSheetsDocumentStore(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            store = InMemoryDocumentStore()
            audit_logger = AuditLogger()
    else:
        store = InMemoryDocumentStore()
        audit_logger = AuditLogger()

    return BudgetControlCore(store, clock=clock, audit_logger=audit_logger)
