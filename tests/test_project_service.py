"""Tests for project creation and edits."""

from datetime import date
from decimal import Decimal

import pytest

from budget_control.errors import (
    NotFoundError,
    PartialBatchFailure,
    TransientStoreError,
    UnauthorizedError,
    ValidationError,
)
from budget_control.models import AuditEventType, Caller, Expense, ProjectStatus, UserRole
from budget_control.projects import ProjectService
from budget_control.services.storage import InMemoryDocumentStore

from conftest import ADMIN, DELEGATE, DORMANT, MANAGER, MEMBER, T0, directory_users

ADMIN_CALLER = Caller(user_id=ADMIN, role=UserRole.ADMIN)
MANAGER_CALLER = Caller(user_id=MANAGER, role=UserRole.APPROVER)
MEMBER_CALLER = Caller(user_id=MEMBER, role=UserRole.USER)


class FlakyDepartmentStore(InMemoryDocumentStore):
    """Fails the migration batch of one department."""

    def __init__(self, failing: str):
        super().__init__(users=directory_users())
        self.failing = failing

    async def update_expenses_atomically(self, expenses):
        if any(e.original_department == self.failing for e in expenses):
            raise TransientStoreError("write timed out")
        return await super().update_expenses_atomically(expenses)


@pytest.fixture
def service(store, clock, audit_logger, settings) -> ProjectService:
    return ProjectService(store, clock=clock, audit_logger=audit_logger, settings=settings)


class TestCreateProject:
    """Project creation."""

    @pytest.mark.asyncio
    async def test_admin_creates_project(self, service, store, audit_storage):
        project = await service.create_project(
            ADMIN_CALLER,
            name="Short Film",
            budget="1500",
            manager_id=MANAGER,
            departments={" Art ": "700", "Sound": 300},
            team_members=[MEMBER],
        )
        assert project.departments == {"Art": Decimal("700"), "Sound": Decimal("300")}
        assert project.budget == Decimal("1500")
        assert project.created_at == T0
        assert await store.get_project(project.id) == project
        assert audit_storage.events[-1].event_type == AuditEventType.PROJECT_CREATED

    @pytest.mark.asyncio
    async def test_only_admin_creates(self, service):
        with pytest.raises(UnauthorizedError):
            await service.create_project(
                MANAGER_CALLER, name="Short Film", budget="1", manager_id=MANAGER
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["Anonymous Department", "Other Expenses"])
    async def test_reserved_department_names(self, service, name):
        with pytest.raises(ValidationError):
            await service.create_project(
                ADMIN_CALLER,
                name="Short Film",
                budget="1",
                manager_id=MANAGER,
                departments={name: "1"},
            )

    @pytest.mark.asyncio
    async def test_manager_must_exist_and_be_active(self, service):
        with pytest.raises(NotFoundError):
            await service.create_project(
                ADMIN_CALLER, name="Short Film", budget="1", manager_id="0000"
            )
        with pytest.raises(ValidationError):
            await service.create_project(
                ADMIN_CALLER, name="Short Film", budget="1", manager_id=DORMANT
            )

    @pytest.mark.asyncio
    async def test_bad_dates_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.create_project(
                ADMIN_CALLER,
                name="Short Film",
                budget="1",
                manager_id=MANAGER,
                start_date=date(2024, 5, 1),
                end_date=date(2024, 4, 1),
            )


class TestUpdateProject:
    """Explicit edits, including department removal."""

    @pytest.mark.asyncio
    async def test_manager_renames_and_rebudgets(self, service, project):
        result = await service.update_project(
            project.id, MANAGER_CALLER, name="Feature Film II", budget="2500"
        )
        assert result.project.name == "Feature Film II"
        assert result.project.budget == Decimal("2500")
        assert result.project.departments == project.departments
        assert result.migrations == []
        assert result.project.version == project.version + 1

    @pytest.mark.asyncio
    async def test_member_cannot_edit(self, service, project):
        with pytest.raises(UnauthorizedError):
            await service.update_project(project.id, MEMBER_CALLER, name="Mine now")

    @pytest.mark.asyncio
    async def test_removed_department_is_migrated(
        self, service, project, make_expense, store
    ):
        moved = await make_expense(project, "Props", "200")

        result = await service.update_project(
            project.id,
            ADMIN_CALLER,
            departments={"Art": "1000", "Sound": "250"},
        )

        assert result.removed_departments == ["Props"]
        assert result.migrated_departments == ["Props"]
        assert not result.is_partial
        assert result.project.departments == {
            "Art": Decimal("1000"),
            "Sound": Decimal("250"),
        }
        stored = await store.get_expense(moved.id)
        assert stored.is_anonymous
        assert stored.original_department == "Props"

    @pytest.mark.asyncio
    async def test_failed_department_stays_in_map(
        self, clock, audit_logger, settings, sample_project
    ):
        store = FlakyDepartmentStore(failing="Art")
        project = await store.create_project(sample_project)
        for department in ("Art", "Props"):
            await store.create_expense(
                Expense(
                    project_id=project.id,
                    department=department,
                    amount=Decimal("10"),
                    submitted_by=MEMBER,
                )
            )
        service = ProjectService(
            store, clock=clock, audit_logger=audit_logger, settings=settings
        )

        result = await service.update_project(project.id, ADMIN_CALLER, departments={})

        assert result.migrated_departments == ["Props"]
        assert result.failed_departments == ["Art"]
        assert result.project.departments == {"Art": Decimal("1000")}
        with pytest.raises(PartialBatchFailure):
            result.raise_for_failures()

        # Repeating the edit retries only what failed
        store.failing = ""
        retry = await service.update_project(project.id, ADMIN_CALLER, departments={})
        assert retry.migrated_departments == ["Art"]
        assert retry.project.departments == {}

    @pytest.mark.asyncio
    async def test_invalid_edit_writes_nothing(self, service, project, make_expense, store):
        expense = await make_expense(project, "Props", "10")
        with pytest.raises(ValidationError):
            await service.update_project(
                project.id,
                ADMIN_CALLER,
                departments={"Art": "1000"},
                start_date=date(2024, 5, 1),
                end_date=date(2024, 4, 1),
            )
        assert (await store.get_expense(expense.id)).department == "Props"
        assert (await store.get_project(project.id)).version == project.version

    @pytest.mark.asyncio
    async def test_status_and_team(self, service, project):
        result = await service.update_project(
            project.id,
            MANAGER_CALLER,
            status="COMPLETED",
            team_members=[MEMBER, DELEGATE],
        )
        assert result.project.status == ProjectStatus.COMPLETED
        assert result.project.team_members == [MEMBER, DELEGATE]

    @pytest.mark.asyncio
    async def test_unknown_status(self, service, project):
        with pytest.raises(ValidationError):
            await service.update_project(project.id, ADMIN_CALLER, status="ARCHIVED")

    @pytest.mark.asyncio
    async def test_edit_is_audited(self, service, project, audit_storage):
        await service.update_project(project.id, ADMIN_CALLER, description="Night shoots")
        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.PROJECT_UPDATED
        assert event.details["changed_fields"] == ["description"]
