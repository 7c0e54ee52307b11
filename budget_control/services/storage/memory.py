"""
In-Memory Storage Implementation

Used by the test suite and for local runs without a spreadsheet.
Documents are copied on the way in and on the way out, so callers can
never mutate stored state by holding on to a returned model.

Each method body runs without awaiting, so a batch is applied in one
step of the event loop and is atomic with respect to other coroutines.
"""

from typing import Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

from budget_control.errors import NotFoundError, StorageError, VersionConflictError
from budget_control.models.audit import AuditEvent
from budget_control.models.delegation import DelegationRecord
from budget_control.models.expense import Expense, ExpenseStatus
from budget_control.models.project import Project
from budget_control.models.user import User
from budget_control.services.storage.interface import (
    AuditStorageInterface,
    DocumentStore,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


def _check_version(entity_type: str, entity_id: str, stored: int, incoming: int) -> None:
    if stored != incoming:
        raise VersionConflictError(entity_type, entity_id, expected=incoming, actual=stored)


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed document store."""

    def __init__(self, users: Optional[list[User]] = None):
        self._projects: dict[str, Project] = {}
        self._expenses: dict[str, Expense] = {}
        self._delegations: dict[str, DelegationRecord] = {}
        self._users: dict[str, User] = {u.id: _copy(u) for u in users or []}

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[Project]:
        project = self._projects.get(project_id)
        return _copy(project) if project else None

    async def create_project(self, project: Project) -> Project:
        if project.id in self._projects:
            raise StorageError(f"Project already exists: {project.id}")
        self._projects[project.id] = _copy(project)
        return _copy(project)

    async def update_project(self, project: Project) -> Project:
        stored = self._projects.get(project.id)
        if stored is None:
            raise NotFoundError("Project", project.id)
        _check_version("Project", project.id, stored.version, project.version)
        saved = project.model_copy(update={"version": stored.version + 1}, deep=True)
        self._projects[project.id] = saved
        return _copy(saved)

    async def list_projects(self) -> list[Project]:
        return [_copy(p) for p in self._projects.values()]

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        expense = self._expenses.get(expense_id)
        return _copy(expense) if expense else None

    async def list_expenses(
        self,
        project_id: str,
        department: Optional[str] = None,
        status: Optional[ExpenseStatus] = None,
    ) -> list[Expense]:
        results = []
        for expense in self._expenses.values():
            if expense.project_id != project_id:
                continue
            if department is not None and expense.department != department:
                continue
            if status is not None and expense.status != status:
                continue
            results.append(_copy(expense))
        results.sort(key=lambda e: e.created_at)
        return results

    async def create_expense(self, expense: Expense) -> Expense:
        if expense.id in self._expenses:
            raise StorageError(f"Expense already exists: {expense.id}")
        self._expenses[expense.id] = _copy(expense)
        return _copy(expense)

    async def update_expense(self, expense: Expense) -> Expense:
        return (await self.update_expenses_atomically([expense]))[0]

    async def update_expenses_atomically(self, expenses: list[Expense]) -> list[Expense]:
        # Check everything first, then apply: all or nothing
        for expense in expenses:
            stored = self._expenses.get(expense.id)
            if stored is None:
                raise NotFoundError("Expense", expense.id)
            _check_version("Expense", expense.id, stored.version, expense.version)

        saved = []
        for expense in expenses:
            new = expense.model_copy(update={"version": expense.version + 1}, deep=True)
            self._expenses[expense.id] = new
            saved.append(_copy(new))
        return saved

    # -------------------------------------------------------------------------
    # Delegations
    # -------------------------------------------------------------------------

    async def get_delegation(
        self,
        project_id: str,
        delegation_id: str,
    ) -> Optional[DelegationRecord]:
        record = self._delegations.get(delegation_id)
        if record is None or record.project_id != project_id:
            return None
        return _copy(record)

    async def list_delegations(self, project_id: str) -> list[DelegationRecord]:
        records = [
            _copy(r) for r in self._delegations.values()
            if r.project_id == project_id
        ]
        records.sort(key=lambda r: r.created_at)
        return records

    async def create_delegation(self, record: DelegationRecord) -> DelegationRecord:
        if record.id in self._delegations:
            raise StorageError(f"Delegation already exists: {record.id}")
        self._delegations[record.id] = _copy(record)
        return _copy(record)

    async def update_delegation(self, record: DelegationRecord) -> DelegationRecord:
        stored = self._delegations.get(record.id)
        if stored is None:
            raise NotFoundError("Delegation", record.id)
        _check_version("Delegation", record.id, stored.version, record.version)
        saved = record.model_copy(update={"version": stored.version + 1}, deep=True)
        self._delegations[record.id] = saved
        return _copy(saved)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return _copy(user) if user else None

    def add_user(self, user: User) -> None:
        """Seed the directory (directory writes live outside the core)."""
        self._users[user.id] = _copy(user)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(_copy(event))
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    @property
    def events(self) -> list[AuditEvent]:
        return [_copy(e) for e in self._events]
