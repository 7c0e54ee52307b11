"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real document database later
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

Projects own two child collections: expenses and delegation records.

CONCURRENCY: Every update is conditional. The caller passes the `version`
it read; the store refuses the write with VersionConflictError if the
stored version moved on, and bumps the version on success.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from budget_control.errors import (
    NotFoundError,
    StorageError,
    TransientStoreError,
    VersionConflictError,
)
from budget_control.models.audit import AuditEvent
from budget_control.models.delegation import DelegationRecord
from budget_control.models.expense import Expense, ExpenseStatus
from budget_control.models.project import Project
from budget_control.models.user import User


class ProjectStoreInterface(ABC):
    """Project documents."""

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        """Return the project, or None if it does not exist."""
        pass

    @abstractmethod
    async def create_project(self, project: Project) -> Project:
        """
        Insert a new project.

        Raises:
            StorageError: If a project with the same id exists
        """
        pass

    @abstractmethod
    async def update_project(self, project: Project) -> Project:
        """
        Replace a project if its stored version equals `project.version`.

        Returns:
            The stored project with its new version

        Raises:
            NotFoundError: If the project doesn't exist
            VersionConflictError: If the project changed since it was read
        """
        pass

    @abstractmethod
    async def list_projects(self) -> list[Project]:
        pass


class ExpenseStoreInterface(ABC):
    """Expense documents (child collection of a project)."""

    @abstractmethod
    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        """
        Look an expense up by id across all projects.

        Returns:
            The expense if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_expenses(
        self,
        project_id: str,
        department: Optional[str] = None,
        status: Optional[ExpenseStatus] = None,
    ) -> list[Expense]:
        """List a project's expenses, optionally filtered (exact match)."""
        pass

    @abstractmethod
    async def create_expense(self, expense: Expense) -> Expense:
        pass

    @abstractmethod
    async def update_expense(self, expense: Expense) -> Expense:
        """
        Conditional replace of one expense.

        Raises:
            NotFoundError: If the expense doesn't exist
            VersionConflictError: If the expense changed since it was read
        """
        pass

    @abstractmethod
    async def update_expenses_atomically(self, expenses: list[Expense]) -> list[Expense]:
        """
        Conditional replace of several expenses as ONE atomic write.

        Either every expense is written or none is. A version conflict on
        any of them aborts the whole batch.

        Raises:
            NotFoundError, VersionConflictError, TransientStoreError
        """
        pass


class DelegationStoreInterface(ABC):
    """Delegation records (child collection of a project). Never deleted."""

    @abstractmethod
    async def get_delegation(
        self,
        project_id: str,
        delegation_id: str,
    ) -> Optional[DelegationRecord]:
        pass

    @abstractmethod
    async def list_delegations(self, project_id: str) -> list[DelegationRecord]:
        pass

    @abstractmethod
    async def create_delegation(self, record: DelegationRecord) -> DelegationRecord:
        pass

    @abstractmethod
    async def update_delegation(self, record: DelegationRecord) -> DelegationRecord:
        """
        Conditional replace of one record.

        Raises:
            NotFoundError, VersionConflictError
        """
        pass


class UserDirectoryInterface(ABC):
    """Read-only view of the user directory."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events of one request in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity in chronological order."""
        pass


class DocumentStore(
    ProjectStoreInterface,
    ExpenseStoreInterface,
    DelegationStoreInterface,
    UserDirectoryInterface,
    ABC,
):
    """Everything the core reads and writes, behind one object."""
    pass


__all__ = [
    "AuditStorageInterface",
    "DelegationStoreInterface",
    "DocumentStore",
    "ExpenseStoreInterface",
    "NotFoundError",
    "ProjectStoreInterface",
    "StorageError",
    "TransientStoreError",
    "UserDirectoryInterface",
    "VersionConflictError",
]
