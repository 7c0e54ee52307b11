"""Validation package."""

from budget_control.validation.validator import CoreValidator, ValidationIssue

__all__ = ["CoreValidator", "ValidationIssue"]
