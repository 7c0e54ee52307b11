"""
Input Validation

DESIGN DECISION: Validation happens BEFORE any write and NEVER silently
fixes input. Every problem found is collected as a ValidationIssue so the
caller sees all of them at once, then a single ValidationError is raised.

Structural checks (types, ranges) live on the pydantic models. This module
adds the checks that need context: reserved names, the current clock, the
project an expense is filed against.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field

from budget_control.clock import ensure_utc
from budget_control.config import AppSettings, get_settings
from budget_control.errors import ValidationError
from budget_control.models.project import Project
from budget_control.models.user import Caller, UserRole


class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(..., description="Field with the issue")
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'reserved')"
    )
    message: str = Field(..., description="Human-readable description of the issue")


def _raise_if_any(issues: list[ValidationIssue], summary: str) -> None:
    if issues:
        details = "; ".join(issue.message for issue in issues)
        raise ValidationError(f"{summary}: {details}", issues=issues)


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return amount if amount.is_finite() else None


class CoreValidator:
    """Context-aware validation for core operations."""

    def __init__(self, settings: Optional[AppSettings] = None):
        self._settings = settings or get_settings().app

    def require_caller(self, caller_id: Optional[str], caller_role: Any) -> Caller:
        """
        Build the caller identity for an authority-checked operation.

        There is no fallback identity: a missing id or role is an error.
        """
        issues = []
        if caller_id is None or not str(caller_id).strip():
            issues.append(ValidationIssue(
                field="caller_id",
                issue_type="missing",
                message="Caller identity is required",
            ))
        role = None
        try:
            role = UserRole(caller_role)
        except ValueError:
            issues.append(ValidationIssue(
                field="caller_role",
                issue_type="invalid_value",
                message=f"Unknown caller role: {caller_role!r}",
            ))
        _raise_if_any(issues, "Invalid caller")
        return Caller(user_id=str(caller_id).strip(), role=role)

    def validate_department_map(self, departments: dict[str, Any]) -> dict[str, Decimal]:
        """Check names and allocations; return a clean name -> Decimal map."""
        issues = []
        cleaned: dict[str, Decimal] = {}
        reserved = self._settings.reserved_department_names

        for raw_name, raw_amount in departments.items():
            name = (raw_name or "").strip()
            if not name:
                issues.append(ValidationIssue(
                    field="departments",
                    issue_type="missing",
                    message="Department name cannot be blank",
                ))
                continue
            if name in reserved:
                issues.append(ValidationIssue(
                    field=f"departments.{name}",
                    issue_type="reserved",
                    message=f"'{name}' is a reserved department name",
                ))
            if name in cleaned:
                issues.append(ValidationIssue(
                    field=f"departments.{name}",
                    issue_type="duplicate",
                    message=f"Duplicate department name: {name}",
                ))
            amount = _to_decimal(raw_amount)
            if amount is None or amount < 0:
                issues.append(ValidationIssue(
                    field=f"departments.{name}",
                    issue_type="invalid_value",
                    message=f"Allocation for '{name}' must be a non-negative number",
                ))
                continue
            cleaned[name] = amount

        _raise_if_any(issues, "Invalid departments")
        return cleaned

    def validate_budget(self, budget: Any) -> Decimal:
        amount = _to_decimal(budget)
        if amount is None or amount < 0:
            raise ValidationError(
                "Invalid budget: budget must be a non-negative number",
                issues=[ValidationIssue(
                    field="budget",
                    issue_type="invalid_value",
                    message="Budget must be a non-negative number",
                )],
            )
        return amount

    def validate_delegation_window(
        self,
        start_date: datetime,
        end_date: datetime,
        now: datetime,
    ) -> tuple[datetime, datetime]:
        """A window must be non-empty and must not already be over."""
        issues = []
        start, end = ensure_utc(start_date), ensure_utc(end_date)
        if end <= start:
            issues.append(ValidationIssue(
                field="end_date",
                issue_type="invalid_value",
                message="Delegation end must be after its start",
            ))
        elif end < ensure_utc(now):
            issues.append(ValidationIssue(
                field="end_date",
                issue_type="invalid_value",
                message="Delegation window has already ended",
            ))
        _raise_if_any(issues, "Invalid delegation window")
        return start, end

    def validate_new_expense(
        self,
        project: Project,
        department: str,
        amount: Any,
    ) -> Decimal:
        """An expense must be positive and filed against a current department."""
        issues = []
        value = _to_decimal(amount)
        if value is None or value <= 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Expense amount must be greater than zero",
            ))
        elif value.as_tuple().exponent < -2:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Expense amount cannot have more than two decimal places",
            ))
        if not project.has_department((department or "").strip()):
            issues.append(ValidationIssue(
                field="department",
                issue_type="unknown",
                message=f"Project has no department named '{department}'",
            ))
        _raise_if_any(issues, "Invalid expense")
        return value
