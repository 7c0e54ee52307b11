"""
Expense State Machine

    PENDING ──▶ APPROVED
       │
       └─────▶ REJECTED

Both targets are terminal. There is no other edge.

GUARDS (checked in this order, before anything is written):
1. Caller identity present and well formed       -> ValidationError
2. Caller is ADMIN or in the resolved authority  -> UnauthorizedError
3. Expense is still PENDING                      -> InvalidStateTransitionError

Writes are conditional on the version that was read. When a concurrent
writer wins, the expense is re-read and every guard is evaluated again,
so a transition that lost the race surfaces as InvalidStateTransition
instead of overwriting the winner.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Optional
from uuid import UUID

import structlog

from budget_control.audit import AuditLogger, create_correlation_id
from budget_control.clock import Clock, SystemClock
from budget_control.config import AppSettings, get_settings
from budget_control.delegation.resolver import resolve_authority
from budget_control.delegation.service import DelegationService
from budget_control.errors import (
    BudgetControlError,
    InvalidStateTransitionError,
    NotFoundError,
    TransientStoreError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from budget_control.models.delegation import AuthoritySet
from budget_control.models.expense import Expense, ExpenseStatus, PaymentMode
from budget_control.models.project import Project, ProjectStatus
from budget_control.models.results import BulkTransitionResult, TransitionOutcome
from budget_control.models.user import Caller
from budget_control.services.storage import DocumentStore
from budget_control.validation import CoreValidator


logger = structlog.get_logger(__name__)


class ExpenseStateMachine:
    """Submits expenses and moves them to their terminal state."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
        delegation_service: Optional[DelegationService] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().app
        self._validator = CoreValidator(self._settings)
        self._delegations = delegation_service or DelegationService(
            store,
            clock=self._clock,
            audit_logger=self._audit,
            settings=self._settings,
        )

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit_expense(
        self,
        project_id: str,
        department: str,
        amount: Any,
        caller_id: str,
        caller_role: Any,
        description: str = "",
        expense_date: Optional[date] = None,
        categories: Optional[list[str]] = None,
        mode_of_payment: Optional[PaymentMode] = None,
        remark: Optional[str] = None,
    ) -> Expense:
        """
        File a new PENDING expense against a current department.

        The caller must be on the project team, its manager, or an admin,
        and the project must be active.
        """
        caller = self._validator.require_caller(caller_id, caller_role)
        project = await self._require_project(project_id)

        if not (caller.is_admin or project.is_member(caller.user_id)):
            raise UnauthorizedError(caller.user_id, f"submit expenses to {project_id}")
        if project.status != ProjectStatus.ACTIVE:
            raise ValidationError(
                f"Project {project_id} is {project.status.value}; expenses are closed"
            )

        value = self._validator.validate_new_expense(project, department, amount)
        now = self._clock.now()
        expense = await self._store.create_expense(
            Expense(
                project_id=project_id,
                department=department.strip(),
                amount=value,
                submitted_by=caller.user_id,
                remark=(remark or "").strip() or None,
                description=description,
                expense_date=expense_date,
                categories=categories or [],
                mode_of_payment=mode_of_payment,
                created_at=now,
                updated_at=now,
            )
        )

        logger.info(
            "expense_submitted",
            expense_id=expense.id,
            project_id=project_id,
            department=expense.department,
        )
        await self._audit.log_expense_submitted(
            expense_id=expense.id,
            project_id=project_id,
            department=expense.department,
            amount=str(expense.amount),
            actor_id=caller.user_id,
        )
        return expense

    # -------------------------------------------------------------------------
    # Approval queue
    # -------------------------------------------------------------------------

    async def pending_approvals(
        self,
        caller_id: str,
        caller_role: Any,
        department: Optional[str] = None,
    ) -> list[Expense]:
        """
        Pending expenses the caller may act on right now, newest first.

        Admins see every project. Anyone else sees the projects whose
        authority set, resolved against server time, contains them.
        `department` keeps only expenses filed under that exact name.
        """
        caller = self._validator.require_caller(caller_id, caller_role)
        now = self._clock.now()

        queue: list[Expense] = []
        for project in await self._store.list_projects():
            if not caller.is_admin:
                authority = resolve_authority(
                    project,
                    await self._store.list_delegations(project.id),
                    now,
                )
                if caller.user_id not in authority:
                    continue
            queue.extend(
                await self._store.list_expenses(
                    project.id,
                    department=department,
                    status=ExpenseStatus.PENDING,
                )
            )

        queue.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return queue

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        expense_id: str,
        target: Any,
        caller_id: str,
        caller_role: Any,
        remark: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Approve or reject one expense.

        Returns:
            The stored expense in its terminal state

        Raises:
            ValidationError: Missing caller or unknown target
            NotFoundError: Unknown expense or project
            UnauthorizedError: Caller holds no authority on the project
            InvalidStateTransitionError: Expense already terminal, or target PENDING
            VersionConflictError: Still losing races after the configured re-reads
            TransientStoreError: Store failure
        """
        caller = self._validator.require_caller(caller_id, caller_role)
        status = self._parse_target(target)
        return await self._transition(
            expense_id,
            status,
            caller,
            remark,
            correlation_id or create_correlation_id(),
        )

    async def transition_many(
        self,
        expense_ids: list[str],
        target: Any,
        caller_id: str,
        caller_role: Any,
        remark: Optional[str] = None,
        item_timeout: Optional[float] = None,
    ) -> BulkTransitionResult:
        """
        Transition several expenses independently.

        A failure on one id never stops the others and never undoes a
        success. Problems with the request itself (caller, target) apply to
        every item, so they are raised instead of itemized.

        With `item_timeout`, an item that takes longer is reported as a
        transient store error and processing moves on.
        """
        caller = self._validator.require_caller(caller_id, caller_role)
        status = self._parse_target(target)
        correlation_id = create_correlation_id()

        outcomes = []
        for expense_id in expense_ids:
            try:
                expense = await self._within(
                    self._transition(expense_id, status, caller, remark, correlation_id),
                    item_timeout,
                    expense_id,
                )
            except InvalidStateTransitionError as e:
                current = ExpenseStatus(e.current_status) if e.current_status else None
                outcomes.append(TransitionOutcome.failed(expense_id, status, e, current))
            except BudgetControlError as e:
                outcomes.append(TransitionOutcome.failed(expense_id, status, e))
            else:
                outcomes.append(
                    TransitionOutcome(
                        expense_id=expense_id,
                        target=status,
                        success=True,
                        status=expense.status,
                    )
                )

        result = BulkTransitionResult(
            target=status,
            outcomes=outcomes,
            completed_at=self._clock.now(),
        )
        logger.info(
            "bulk_transition_completed",
            target=status.value,
            succeeded=result.success_count,
            failed=result.failure_count,
            correlation_id=str(correlation_id),
        )
        return result

    async def _transition(
        self,
        expense_id: str,
        target: ExpenseStatus,
        caller: Caller,
        remark: Optional[str],
        correlation_id: UUID,
    ) -> Expense:
        attempts = self._settings.max_conflict_retries
        attempt = 0
        while True:
            expense = await self._require_expense(expense_id)
            project = await self._require_project(expense.project_id)
            now = self._clock.now()
            authority = resolve_authority(
                project,
                await self._store.list_delegations(project.id),
                now,
            )

            try:
                self._check_guards(expense, target, caller, authority)
            except (UnauthorizedError, InvalidStateTransitionError) as e:
                await self._audit.log_transition_denied(
                    expense_id=expense_id,
                    actor_id=caller.user_id,
                    reason=e.message,
                    error_code=e.kind.value,
                    correlation_id=correlation_id,
                )
                raise

            try:
                saved = await self._store.update_expense(
                    self._apply(expense, target, caller, remark, now)
                )
                break
            except VersionConflictError:
                if attempt >= attempts:
                    raise
                attempt += 1
                logger.info(
                    "expense_conflict_retry",
                    expense_id=expense_id,
                    attempt=attempt,
                )

        via_delegation = None
        if not caller.is_admin and authority.acts_through_delegation(caller.user_id):
            via_delegation = authority.delegation_id
            await self._record_on_delegation(
                project.id, via_delegation, saved.id, correlation_id
            )

        await self._audit.log_expense_transitioned(
            expense_id=saved.id,
            project_id=project.id,
            approved=target == ExpenseStatus.APPROVED,
            actor_id=caller.user_id,
            via_delegation=via_delegation,
            correlation_id=correlation_id,
        )
        return saved

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _within(
        self,
        awaitable: Awaitable[Expense],
        timeout: Optional[float],
        expense_id: str,
    ) -> Expense:
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientStoreError(
                f"Transition of expense {expense_id} timed out after {timeout}s"
            )

    async def _record_on_delegation(
        self,
        project_id: str,
        delegation_id: str,
        expense_id: str,
        correlation_id: UUID,
    ) -> None:
        """
        Append the expense to the delegation's trail.

        The transition is already committed at this point, so a failure here
        is reported through the audit log instead of failing the transition.
        """
        try:
            await self._delegations.record_acted_expense(
                project_id, delegation_id, expense_id
            )
        except BudgetControlError as e:
            logger.error(
                "delegation_trail_failed",
                delegation_id=delegation_id,
                expense_id=expense_id,
                error=e.message,
            )
            await self._audit.log_error(
                error_type=e.kind.value,
                error_message=e.message,
                details={"delegation_id": delegation_id, "expense_id": expense_id},
                correlation_id=correlation_id,
            )

    def _parse_target(self, target: Any) -> ExpenseStatus:
        if isinstance(target, str) and not isinstance(target, ExpenseStatus):
            target = target.strip().upper()
        try:
            status = ExpenseStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown expense status: {target!r}")
        if not status.is_terminal:
            raise InvalidStateTransitionError(
                "Expenses can only move to APPROVED or REJECTED"
            )
        return status

    def _check_guards(
        self,
        expense: Expense,
        target: ExpenseStatus,
        caller: Caller,
        authority: AuthoritySet,
    ) -> None:
        if not (caller.is_admin or caller.user_id in authority):
            raise UnauthorizedError(
                caller.user_id,
                f"mark expense {expense.id} as {target.value}",
            )
        if expense.status.is_terminal:
            raise InvalidStateTransitionError(
                f"Expense {expense.id} is already {expense.status.value}",
                current_status=expense.status.value,
            )

    def _apply(
        self,
        expense: Expense,
        target: ExpenseStatus,
        caller: Caller,
        remark: Optional[str],
        now: datetime,
    ) -> Expense:
        if caller.is_admin:
            new_remark = (
                self._settings.admin_approve_remark
                if target == ExpenseStatus.APPROVED
                else self._settings.admin_reject_remark
            )
        else:
            new_remark = (remark or "").strip() or expense.remark

        return expense.model_copy(update={
            "status": target,
            "approved_at": now,
            "approved_by": caller.user_id,
            "remark": new_remark,
            "updated_at": now,
        })

    async def _require_expense(self, expense_id: str) -> Expense:
        expense = await self._store.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense", expense_id)
        return expense

    async def _require_project(self, project_id: str) -> Project:
        project = await self._store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project
