"""
Delegation Service

Lifecycle writes for delegation records:

    grant (pending) -> accept | reject(reason)

Records are never deleted. Detaching a delegate clears the project's
informational `temp_approver_id` pointer and leaves the record alone;
whether the record is still in force is the resolver's business.
"""

from datetime import datetime
from typing import Optional

import structlog

from budget_control.audit import AuditLogger
from budget_control.clock import Clock, SystemClock
from budget_control.config import AppSettings, get_settings
from budget_control.delegation.resolver import delegation_phase, resolve_authority
from budget_control.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from budget_control.models.audit import AuditEventType
from budget_control.models.delegation import (
    AuthoritySet,
    DelegationRecord,
    DelegationStatus,
    DelegationView,
)
from budget_control.models.project import Project
from budget_control.models.user import Caller
from budget_control.services.storage import DocumentStore
from budget_control.validation import CoreValidator


logger = structlog.get_logger(__name__)


class DelegationService:
    """Grant, answer and detach temporary approvers."""

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

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _require_project(self, project_id: str) -> Project:
        project = await self._store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def _require_delegation(
        self,
        project_id: str,
        delegation_id: str,
    ) -> DelegationRecord:
        record = await self._store.get_delegation(project_id, delegation_id)
        if record is None:
            raise NotFoundError("Delegation", delegation_id)
        return record

    async def current_authority(self, project_id: str) -> AuthoritySet:
        """Resolve the authority set against server time."""
        project = await self._require_project(project_id)
        records = await self._store.list_delegations(project_id)
        return resolve_authority(project, records, self._clock.now())

    async def list_delegations(
        self,
        project_id: str,
        as_of: Optional[datetime] = None,
    ) -> list[DelegationView]:
        """All records of a project, newest first, with their computed phase."""
        await self._require_project(project_id)
        instant = as_of or self._clock.now()
        records = await self._store.list_delegations(project_id)
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return [
            DelegationView(record=r, phase=delegation_phase(r, instant), as_of=instant)
            for r in records
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def grant_delegation(
        self,
        project_id: str,
        approver_id: str,
        start_date: datetime,
        end_date: datetime,
        caller: Caller,
    ) -> DelegationRecord:
        """
        Create a PENDING delegation for `approver_id`.

        Only an admin or the project manager may grant. The approver must be
        an active directory user other than the manager.

        Raises:
            NotFoundError: Unknown project or approver
            UnauthorizedError: Caller may not manage this project
            ValidationError: Bad window or approver
        """
        project = await self._require_project(project_id)
        if not (caller.is_admin or caller.user_id == project.manager_id):
            raise UnauthorizedError(caller.user_id, f"grant delegations on {project_id}")

        approver_id = (approver_id or "").strip()
        approver = await self._store.get_user(approver_id) if approver_id else None
        if approver is None:
            raise NotFoundError("User", approver_id)
        if not approver.is_active:
            raise ValidationError(f"User {approver_id} is not active")
        if approver_id == project.manager_id:
            raise ValidationError("The project manager already holds approval authority")

        now = self._clock.now()
        start, end = self._validator.validate_delegation_window(start_date, end_date, now)

        record = await self._store.create_delegation(
            DelegationRecord(
                project_id=project_id,
                approver_id=approver_id,
                start_date=start,
                end_date=end,
                created_at=now,
                updated_at=now,
            )
        )
        await self._set_pointer(project_id, approver_id)

        logger.info(
            "delegation_granted",
            project_id=project_id,
            delegation_id=record.id,
            approver_id=approver_id,
        )
        await self._audit.log_delegation_event(
            event_type=AuditEventType.DELEGATION_GRANTED,
            delegation_id=record.id,
            project_id=project_id,
            approver_id=approver_id,
            actor_id=caller.user_id,
            details={
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
        )
        return record

    async def accept_delegation(
        self,
        project_id: str,
        delegation_id: str,
        caller: Caller,
    ) -> DelegationRecord:
        """The named approver accepts a pending delegation."""
        record = await self._answer(project_id, delegation_id, caller, accept=True)
        await self._audit.log_delegation_event(
            event_type=AuditEventType.DELEGATION_ACCEPTED,
            delegation_id=record.id,
            project_id=project_id,
            approver_id=record.approver_id,
            actor_id=caller.user_id,
        )
        return record

    async def reject_delegation(
        self,
        project_id: str,
        delegation_id: str,
        caller: Caller,
        reason: str,
    ) -> DelegationRecord:
        """
        The named approver declines a pending delegation.

        A reason is mandatory. If the project still points at this approver,
        the pointer is cleared.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        record = await self._answer(
            project_id, delegation_id, caller, accept=False, reason=reason
        )
        await self._set_pointer(project_id, None, only_if=record.approver_id)

        await self._audit.log_delegation_event(
            event_type=AuditEventType.DELEGATION_REJECTED,
            delegation_id=record.id,
            project_id=project_id,
            approver_id=record.approver_id,
            actor_id=caller.user_id,
            details={"reason": reason},
        )
        return record

    async def detach_delegate(self, project_id: str, caller: Caller) -> Project:
        """Clear the project's temporary approver pointer. Records are kept."""
        project = await self._require_project(project_id)
        if not (caller.is_admin or caller.user_id == project.manager_id):
            raise UnauthorizedError(caller.user_id, f"detach the delegate of {project_id}")

        previous = project.temp_approver_id
        project = await self._set_pointer(project_id, None)

        await self._audit.log_delegation_event(
            event_type=AuditEventType.DELEGATE_DETACHED,
            delegation_id=None,
            project_id=project_id,
            approver_id=previous,
            actor_id=caller.user_id,
        )
        return project

    async def record_acted_expense(
        self,
        project_id: str,
        delegation_id: str,
        expense_id: str,
    ) -> DelegationRecord:
        """
        Append `expense_id` to the record's `approved_expense` trail.

        Appending an id that is already present is a no-op.
        """
        attempts = self._settings.max_conflict_retries
        attempt = 0
        while True:
            record = await self._require_delegation(project_id, delegation_id)
            if expense_id in record.approved_expense:
                return record
            record.approved_expense.append(expense_id)
            record.updated_at = self._clock.now()
            try:
                return await self._store.update_delegation(record)
            except VersionConflictError:
                if attempt >= attempts:
                    raise
                attempt += 1
                logger.info(
                    "delegation_conflict_retry",
                    delegation_id=delegation_id,
                    attempt=attempt,
                )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _answer(
        self,
        project_id: str,
        delegation_id: str,
        caller: Caller,
        accept: bool,
        reason: Optional[str] = None,
    ) -> DelegationRecord:
        record = await self._require_delegation(project_id, delegation_id)
        action = "accept" if accept else "reject"
        if caller.user_id != record.approver_id:
            raise UnauthorizedError(caller.user_id, f"{action} delegation {delegation_id}")
        if record.status != DelegationStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Delegation {delegation_id} is already {record.status.value}",
                current_status=record.status.value,
            )

        record.status = DelegationStatus.ACCEPTED if accept else DelegationStatus.REJECTED
        record.rejection_reason = reason
        record.updated_at = self._clock.now()
        try:
            saved = await self._store.update_delegation(record)
        except VersionConflictError:
            # Someone answered first; report the state they left behind
            current = await self._require_delegation(project_id, delegation_id)
            raise InvalidStateTransitionError(
                f"Delegation {delegation_id} is already {current.status.value}",
                current_status=current.status.value,
            )

        logger.info(
            "delegation_answered",
            project_id=project_id,
            delegation_id=delegation_id,
            status=saved.status.value,
        )
        return saved

    async def _set_pointer(
        self,
        project_id: str,
        approver_id: Optional[str],
        only_if: Optional[str] = None,
    ) -> Project:
        """
        Point `temp_approver_id` at `approver_id` (None clears it).

        With `only_if`, the pointer changes only while it still names that user.
        """
        attempts = self._settings.max_conflict_retries
        attempt = 0
        while True:
            project = await self._require_project(project_id)
            if only_if is not None and project.temp_approver_id != only_if:
                return project
            if project.temp_approver_id == approver_id:
                return project
            project.temp_approver_id = approver_id
            project.updated_at = self._clock.now()
            try:
                return await self._store.update_project(project)
            except VersionConflictError:
                if attempt >= attempts:
                    raise
                attempt += 1
                logger.info(
                    "project_conflict_retry",
                    project_id=project_id,
                    attempt=attempt,
                )
