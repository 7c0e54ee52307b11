"""
Project Service

Creates projects and applies explicit edits to them.

DESIGN DECISION: An edit that drops departments migrates each dropped
department BEFORE the project is saved. A department whose migration
failed is put back into the saved map with its old allocation, so its
expenses are never left pointing at a department that is gone, and
repeating the same edit retries just the failed part.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError

from budget_control.audit import AuditLogger, create_correlation_id
from budget_control.clock import Clock, SystemClock
from budget_control.config import AppSettings, get_settings
from budget_control.errors import (
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from budget_control.migration.service import DepartmentMigrationService
from budget_control.models.project import Project, ProjectStatus
from budget_control.models.results import MigrationResult, ProjectEditResult
from budget_control.models.user import Caller
from budget_control.services.storage import DocumentStore
from budget_control.validation import CoreValidator


logger = structlog.get_logger(__name__)

_UNSET: Any = object()


class ProjectService:
    """Project creation and editing."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
        migration_service: Optional[DepartmentMigrationService] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().app
        self._validator = CoreValidator(self._settings)
        self._migration = migration_service or DepartmentMigrationService(
            store,
            clock=self._clock,
            audit_logger=self._audit,
            settings=self._settings,
        )

    async def get_project(self, project_id: str) -> Project:
        project = await self._store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def create_project(
        self,
        caller: Caller,
        name: str,
        budget: Any,
        manager_id: str,
        departments: Optional[dict[str, Any]] = None,
        description: str = "",
        team_members: Optional[list[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Project:
        """
        Create a project. Admin only.

        Raises:
            UnauthorizedError: Caller is not an admin
            NotFoundError: Manager is not in the user directory
            ValidationError: Bad budget, departments, dates or manager
        """
        if not caller.is_admin:
            raise UnauthorizedError(caller.user_id, "create projects")

        amount = self._validator.validate_budget(budget)
        allocations = self._validator.validate_department_map(departments or {})
        manager_id = await self._require_active_user(manager_id)

        now = self._clock.now()
        project = self._build(
            name=name,
            description=description,
            budget=amount,
            departments=allocations,
            manager_id=manager_id,
            team_members=team_members or [],
            start_date=start_date,
            end_date=end_date,
            created_at=now,
            updated_at=now,
        )
        project = await self._store.create_project(project)

        logger.info("project_created", project_id=project.id, name=project.name)
        await self._audit.log_project_created(project.id, project.name, caller.user_id)
        return project

    async def update_project(
        self,
        project_id: str,
        caller: Caller,
        name: Optional[str] = _UNSET,
        description: Optional[str] = _UNSET,
        budget: Any = _UNSET,
        departments: Optional[dict[str, Any]] = _UNSET,
        manager_id: Optional[str] = _UNSET,
        team_members: Optional[list[str]] = _UNSET,
        status: Optional[ProjectStatus] = _UNSET,
        start_date: Optional[date] = _UNSET,
        end_date: Optional[date] = _UNSET,
        correlation_id: Optional[UUID] = None,
        migration_timeout: Optional[float] = None,
    ) -> ProjectEditResult:
        """
        Apply an edit. Only the fields that are passed change.

        `departments` replaces the whole map. Departments missing from the
        new map are migrated to the anonymous department, one batch each.

        Returns:
            ProjectEditResult with the saved project and one MigrationResult
            per dropped department. Call `raise_for_failures()` to turn a
            partial migration into PartialBatchFailure.

        `migration_timeout` bounds each department batch. An expiry fails
        that department only; the edit is still saved and returned.
        """
        correlation_id = correlation_id or create_correlation_id()
        project = await self.get_project(project_id)
        if not (caller.is_admin or caller.user_id == project.manager_id):
            raise UnauthorizedError(caller.user_id, f"edit project {project_id}")

        changes: dict[str, Any] = {}
        if name is not _UNSET:
            changes["name"] = name
        if description is not _UNSET:
            changes["description"] = description or ""
        if budget is not _UNSET:
            changes["budget"] = self._validator.validate_budget(budget)
        if manager_id is not _UNSET:
            changes["manager_id"] = await self._require_active_user(manager_id)
        if team_members is not _UNSET:
            changes["team_members"] = list(team_members or [])
        if status is not _UNSET:
            try:
                changes["status"] = ProjectStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown project status: {status!r}")
        if start_date is not _UNSET:
            changes["start_date"] = start_date
        if end_date is not _UNSET:
            changes["end_date"] = end_date

        allocations: Optional[dict[str, Decimal]] = None
        if departments is not _UNSET:
            allocations = self._validator.validate_department_map(departments or {})

        # Validate the whole edit before anything is written
        candidate = {**project.model_dump(), **changes}
        if allocations is not None:
            candidate["departments"] = allocations
        self._build(**candidate)

        removed: list[str] = []
        migrations: list[MigrationResult] = []
        if allocations is not None:
            removed = [d for d in project.departments if d not in allocations]
            migrations = await self._migration.migrate_departments(
                project_id, removed, correlation_id, migration_timeout
            )
            for result in migrations:
                if not result.success:
                    allocations[result.department] = project.departments[result.department]
            changes["departments"] = allocations

        saved = await self._save(project_id, changes)

        result = ProjectEditResult(
            project=saved,
            removed_departments=removed,
            migrations=migrations,
        )
        logger.info(
            "project_updated",
            project_id=project_id,
            changed_fields=sorted(changes),
            removed_departments=removed,
            failed_departments=result.failed_departments,
        )
        await self._audit.log_project_updated(
            project_id=project_id,
            changed_fields=sorted(changes),
            actor_id=caller.user_id,
            correlation_id=correlation_id,
        )
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _build(self, **data: Any) -> Project:
        try:
            return Project(**data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid project: {e.errors()[0]['msg']}")

    async def _require_active_user(self, user_id: Optional[str]) -> str:
        user_id = (user_id or "").strip()
        user = await self._store.get_user(user_id) if user_id else None
        if user is None:
            raise NotFoundError("User", user_id)
        if not user.is_active:
            raise ValidationError(f"User {user_id} is not active")
        return user_id

    async def _save(self, project_id: str, changes: dict[str, Any]) -> Project:
        """Write `changes` onto the latest stored project, re-reading on conflict."""
        attempts = self._settings.max_conflict_retries
        attempt = 0
        while True:
            current = await self.get_project(project_id)
            updated = self._build(**{
                **current.model_dump(),
                **changes,
                "updated_at": self._clock.now(),
            })
            try:
                return await self._store.update_project(updated)
            except VersionConflictError:
                if attempt >= attempts:
                    raise
                attempt += 1
                logger.info(
                    "project_conflict_retry",
                    project_id=project_id,
                    attempt=attempt,
                )
