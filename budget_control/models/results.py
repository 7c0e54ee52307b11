"""
Result Models for Mutating Operations

Bulk operations return one outcome per item. A failed item never hides
the items that succeeded, and vice versa.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from budget_control.clock import utc_now
from budget_control.errors import BudgetControlError, ErrorKind, PartialBatchFailure
from budget_control.models.expense import ExpenseStatus
from budget_control.models.project import Project


class TransitionOutcome(BaseModel):
    """Outcome of one expense transition."""
    model_config = ConfigDict(frozen=True)

    expense_id: str
    target: ExpenseStatus
    success: bool
    status: Optional[ExpenseStatus] = Field(
        default=None,
        description="Status of the expense after the attempt, if it was read",
    )
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def failed(
        cls,
        expense_id: str,
        target: ExpenseStatus,
        error: BudgetControlError,
        status: Optional[ExpenseStatus] = None,
    ) -> "TransitionOutcome":
        return cls(
            expense_id=expense_id,
            target=target,
            success=False,
            status=status,
            error_kind=error.kind,
            error_message=error.message,
        )


class BulkTransitionResult(BaseModel):
    """Itemized result of a multi-expense transition."""
    model_config = ConfigDict(frozen=True)

    target: ExpenseStatus
    outcomes: list[TransitionOutcome] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=utc_now)

    @property
    def succeeded(self) -> list[TransitionOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[TransitionOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0


class MigrationResult(BaseModel):
    """
    Outcome of moving one deleted department's expenses to the anonymous bucket.

    `success == False` means NOTHING was written for this department.
    """
    model_config = ConfigDict(frozen=True)

    project_id: str
    department: str
    success: bool
    migrated_expense_ids: list[str] = Field(default_factory=list)
    migrated_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def migrated_count(self) -> int:
        return len(self.migrated_expense_ids)


class ProjectEditResult(BaseModel):
    """Result of a project edit, including any department migrations."""
    model_config = ConfigDict(frozen=True)

    project: Project
    removed_departments: list[str] = Field(default_factory=list)
    migrations: list[MigrationResult] = Field(default_factory=list)

    @property
    def failed_departments(self) -> list[str]:
        return [m.department for m in self.migrations if not m.success]

    @property
    def migrated_departments(self) -> list[str]:
        return [m.department for m in self.migrations if m.success]

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_departments)

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any department failed to migrate."""
        if self.is_partial:
            raise PartialBatchFailure(
                f"Failed to migrate departments: {', '.join(self.failed_departments)}",
                failed=self.failed_departments,
                succeeded=self.migrated_departments,
            )
