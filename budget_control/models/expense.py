"""
Expense Models

CRITICAL: An expense is created PENDING and moves exactly once into a
terminal state (APPROVED or REJECTED). There is no way back.

The department migration may later rewrite the department fields of an
expense, but never its amount or status.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from budget_control.clock import new_id, utc_now


class ExpenseStatus(str, Enum):
    """Expense approval status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExpenseStatus.PENDING


class PaymentMode(str, Enum):
    """How the expense was paid."""
    CASH = "By cash"
    UPI = "By UPI"
    CHECK = "By check"


class Expense(BaseModel):
    """A spend request filed against one department of a project."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    project_id: str = Field(..., min_length=1)
    department: str = Field(
        ...,
        min_length=1,
        description="May name a department that no longer exists",
    )
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    status: ExpenseStatus = ExpenseStatus.PENDING
    submitted_by: str = Field(..., min_length=1)
    remark: Optional[str] = Field(default=None, max_length=1000)

    # Set only by a transition
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None

    # Set only by the department migration
    is_anonymous: bool = False
    original_department: Optional[str] = None
    department_deleted_at: Optional[datetime] = None

    # Descriptive fields from the submission form
    expense_date: Optional[date] = None
    description: str = Field(default="", max_length=1000)
    categories: list[str] = Field(default_factory=list)
    mode_of_payment: Optional[PaymentMode] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    @field_validator("categories")
    @classmethod
    def drop_blank_categories(cls, v: list[str]) -> list[str]:
        return [c.strip() for c in v if c and c.strip()]
