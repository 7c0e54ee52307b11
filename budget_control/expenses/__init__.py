"""Expense lifecycle."""

from budget_control.expenses.state_machine import ExpenseStateMachine

__all__ = ["ExpenseStateMachine"]
