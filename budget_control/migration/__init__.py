"""Department migration."""

from budget_control.migration.service import DepartmentMigrationService

__all__ = ["DepartmentMigrationService"]
