"""Project creation and edits."""

from budget_control.projects.service import ProjectService

__all__ = ["ProjectService"]
