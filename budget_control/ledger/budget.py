"""
Budget Ledger

Pure aggregation: project snapshot + expenses in, immutable figures out.
Nothing here reads a store, caches, or mutates its inputs; callers
recompute after every change they observe.

RULES:
- Only APPROVED expenses count as spend.
- An expense whose department is not a current key of the project, or
  that was migrated to the anonymous department, is reported under the
  synthetic "Other Expenses" bucket with zero allocation.
- `remaining` may go negative. Overspend is reported, never prevented.
"""

from decimal import Decimal
from typing import Iterable

from budget_control.models.expense import Expense, ExpenseStatus
from budget_control.models.project import (
    OTHER_EXPENSES_LABEL,
    AnonymousDepartment,
    DepartmentBudget,
    DepartmentRef,
    KnownDepartment,
    Project,
    ProjectBudgetSummary,
)

ZERO = Decimal("0")


def classify_department(project: Project, expense: Expense) -> DepartmentRef:
    """Resolve which bucket an expense belongs to on this project."""
    if expense.is_anonymous:
        return AnonymousDepartment(original_name=expense.original_department)
    if project.has_department(expense.department):
        return KnownDepartment(name=expense.department)
    return AnonymousDepartment(original_name=expense.department)


def _project_expenses(project: Project, expenses: Iterable[Expense]) -> list[Expense]:
    return [e for e in expenses if e.project_id == project.id]


def compute_department_budgets(
    project: Project,
    expenses: Iterable[Expense],
    other_label: str = OTHER_EXPENSES_LABEL,
) -> list[DepartmentBudget]:
    """
    Per-department allocated / approved-spent / remaining figures.

    Departments are returned sorted by name. The synthetic bucket comes last
    and is present only when at least one expense falls into it.
    """
    approved = {name: ZERO for name in project.departments}
    pending = {name: ZERO for name in project.departments}
    other_approved = ZERO
    other_pending = ZERO
    has_other = False

    for expense in _project_expenses(project, expenses):
        ref = classify_department(project, expense)
        if isinstance(ref, KnownDepartment):
            if expense.status == ExpenseStatus.APPROVED:
                approved[ref.name] += expense.amount
            elif expense.status == ExpenseStatus.PENDING:
                pending[ref.name] += expense.amount
        else:
            has_other = True
            if expense.status == ExpenseStatus.APPROVED:
                other_approved += expense.amount
            elif expense.status == ExpenseStatus.PENDING:
                other_pending += expense.amount

    budgets = [
        DepartmentBudget(
            name=name,
            allocated=project.departments[name],
            approved_spent=approved[name],
            pending_amount=pending[name],
        )
        for name in sorted(project.departments)
    ]
    if has_other:
        budgets.append(
            DepartmentBudget(
                name=other_label,
                allocated=ZERO,
                approved_spent=other_approved,
                pending_amount=other_pending,
                is_synthetic=True,
            )
        )
    return budgets


def summarize_project_budget(
    project: Project,
    expenses: Iterable[Expense],
) -> ProjectBudgetSummary:
    """Project-level totals, measured against the authoritative total budget."""
    relevant = _project_expenses(project, expenses)
    return ProjectBudgetSummary(
        project_id=project.id,
        total_budget=project.budget,
        allocated_total=sum(project.departments.values(), ZERO),
        approved_spent=sum(
            (e.amount for e in relevant if e.status == ExpenseStatus.APPROVED), ZERO
        ),
        pending_amount=sum(
            (e.amount for e in relevant if e.status == ExpenseStatus.PENDING), ZERO
        ),
    )
