"""
Project and Department Models

A project carries an authoritative total budget and an independent
breakdown of department allocations. The two are NOT required to add up;
the ledger reports the difference as unallocated.

DESIGN DECISION: Department membership of an expense is modelled as a
tagged variant (DepartmentRef). "This expense's department no longer
exists" is an explicit case, not an incidental dictionary miss.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from budget_control.clock import new_id, utc_now

# Department written onto expenses whose department was deleted
ANONYMOUS_DEPARTMENT_NAME = "Anonymous Department"

# Ledger bucket for expenses that match no current department
OTHER_EXPENSES_LABEL = "Other Expenses"


class ProjectStatus(str, Enum):
    """Project lifecycle status."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    COMPLETED = "COMPLETED"


class Project(BaseModel):
    """
    A production project.

    `temp_approver_id` is informational only. Who may approve is derived
    from delegation records by the resolver, never from this pointer.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    budget: Decimal = Field(..., ge=0, description="Total budget, set independently")
    departments: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Department name -> allocated amount",
    )
    manager_id: str = Field(..., min_length=1)
    temp_approver_id: Optional[str] = None
    team_members: list[str] = Field(default_factory=list)
    status: ProjectStatus = ProjectStatus.ACTIVE
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    @field_validator("departments", mode="before")
    @classmethod
    def normalise_department_names(cls, v: Any) -> Any:
        """Trim names, reject blanks and names that collide once trimmed."""
        if not isinstance(v, dict):
            return v
        cleaned: dict[str, Any] = {}
        for raw_name, amount in v.items():
            name = str(raw_name).strip()
            if not name:
                raise ValueError("Department name cannot be blank")
            if name in cleaned:
                raise ValueError(f"Duplicate department name: {name}")
            cleaned[name] = amount
        return cleaned

    @field_validator("departments")
    @classmethod
    def non_negative_allocations(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        for name, amount in v.items():
            if amount < 0:
                raise ValueError(f"Allocation for {name} cannot be negative")
        return v

    @field_validator("team_members")
    @classmethod
    def dedupe_team(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for member in v:
            member = member.strip()
            if member and member not in seen:
                seen.append(member)
        return seen

    @model_validator(mode="after")
    def validate_dates(self) -> "Project":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("Project end date cannot be before start date")
        return self

    def has_department(self, name: str) -> bool:
        return name in self.departments

    def is_member(self, user_id: str) -> bool:
        """Team members and the manager may submit expenses."""
        return user_id == self.manager_id or user_id in self.team_members


# =============================================================================
# DEPARTMENT REFERENCE (tagged variant)
# =============================================================================

class KnownDepartment(BaseModel):
    """Expense belongs to a department that exists on the project."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["known"] = "known"
    name: str


class AnonymousDepartment(BaseModel):
    """
    Expense belongs to a department that is gone.

    `original_name` is the department it was filed under, when known.
    """
    model_config = ConfigDict(frozen=True)

    kind: Literal["anonymous"] = "anonymous"
    original_name: Optional[str] = None


DepartmentRef = Annotated[
    Union[KnownDepartment, AnonymousDepartment],
    Field(discriminator="kind"),
]


# =============================================================================
# LEDGER SNAPSHOTS
# =============================================================================

class DepartmentBudget(BaseModel):
    """Allocated vs. approved spend for one department (immutable snapshot)."""
    model_config = ConfigDict(frozen=True)

    name: str
    allocated: Decimal
    approved_spent: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")
    is_synthetic: bool = Field(
        default=False,
        description="True for the bucket of expenses with no current department",
    )

    @computed_field
    @property
    def remaining(self) -> Decimal:
        """May be negative: overspend is reported, not prevented."""
        return self.allocated - self.approved_spent

    @property
    def is_over_budget(self) -> bool:
        return self.remaining < 0


class ProjectBudgetSummary(BaseModel):
    """Project-level totals across all departments."""
    model_config = ConfigDict(frozen=True)

    project_id: str
    total_budget: Decimal
    allocated_total: Decimal
    approved_spent: Decimal
    pending_amount: Decimal

    @computed_field
    @property
    def unallocated(self) -> Decimal:
        """Part of the total budget not assigned to any department."""
        return self.total_budget - self.allocated_total

    @computed_field
    @property
    def remaining(self) -> Decimal:
        return self.total_budget - self.approved_spent
