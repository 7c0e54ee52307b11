"""Budget ledger package."""

from budget_control.ledger.budget import (
    classify_department,
    compute_department_budgets,
    summarize_project_budget,
)

__all__ = [
    "classify_department",
    "compute_department_budgets",
    "summarize_project_budget",
]
