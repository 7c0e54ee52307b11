"""
Data Models Package

This package contains all Pydantic models used in the Budget Control core.
All data flowing through the system must conform to these schemas.
"""

from budget_control.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from budget_control.models.delegation import (
    AuthoritySet,
    DelegationPhase,
    DelegationRecord,
    DelegationStatus,
    DelegationView,
)
from budget_control.models.expense import Expense, ExpenseStatus, PaymentMode
from budget_control.models.project import (
    ANONYMOUS_DEPARTMENT_NAME,
    OTHER_EXPENSES_LABEL,
    AnonymousDepartment,
    DepartmentBudget,
    DepartmentRef,
    KnownDepartment,
    Project,
    ProjectBudgetSummary,
    ProjectStatus,
)
from budget_control.models.results import (
    BulkTransitionResult,
    MigrationResult,
    ProjectEditResult,
    TransitionOutcome,
)
from budget_control.models.user import Caller, User, UserRole

__all__ = [
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Delegation models
    "AuthoritySet",
    "DelegationPhase",
    "DelegationRecord",
    "DelegationStatus",
    "DelegationView",
    # Expense models
    "Expense",
    "ExpenseStatus",
    "PaymentMode",
    # Project models
    "ANONYMOUS_DEPARTMENT_NAME",
    "OTHER_EXPENSES_LABEL",
    "AnonymousDepartment",
    "DepartmentBudget",
    "DepartmentRef",
    "KnownDepartment",
    "Project",
    "ProjectBudgetSummary",
    "ProjectStatus",
    # Results
    "BulkTransitionResult",
    "MigrationResult",
    "ProjectEditResult",
    "TransitionOutcome",
    # Users
    "Caller",
    "User",
    "UserRole",
]
