"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from budget_control.audit import AuditLogger
from budget_control.clock import Clock
from budget_control.config import AppSettings
from budget_control.models import (
    DelegationRecord,
    DelegationStatus,
    Expense,
    ExpenseStatus,
    Project,
    User,
    UserRole,
)
from budget_control.orchestrator import BudgetControlCore
from budget_control.services.storage import InMemoryAuditStorage, InMemoryDocumentStore


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

ADMIN = "admin@studio.test"
MANAGER = "9000000001"
DELEGATE = "9000000002"
MEMBER = "9000000003"
DORMANT = "9000000004"


class FixedClock(Clock):
    """Server clock that only moves when a test moves it."""

    def __init__(self, current: datetime = T0):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


def directory_users() -> list[User]:
    return [
        User(id=ADMIN, name="Studio Admin", role=UserRole.ADMIN, email=ADMIN),
        User(id=MANAGER, name="Line Producer", role=UserRole.APPROVER),
        User(id=DELEGATE, name="Production Manager", role=UserRole.APPROVER),
        User(id=MEMBER, name="Art Assistant", role=UserRole.USER),
        User(id=DORMANT, name="Former Producer", role=UserRole.APPROVER, is_active=False),
    ]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(app_environment="test", max_conflict_retries=3)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(users=directory_users())


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def sample_project() -> Project:
    return Project(
        id="proj-film",
        name="Feature Film",
        budget=Decimal("2000"),
        departments={"Art": Decimal("1000"), "Props": Decimal("500")},
        manager_id=MANAGER,
        team_members=[MEMBER],
        created_at=T0,
        updated_at=T0,
    )


@pytest_asyncio.fixture
async def project(store, sample_project) -> Project:
    return await store.create_project(sample_project)


@pytest.fixture
def make_expense(store):
    """Factory that stores an expense on a project."""
    async def _make(
        project: Project,
        department: str,
        amount: str,
        status: ExpenseStatus = ExpenseStatus.PENDING,
        **extra,
    ) -> Expense:
        fields = {"submitted_by": MEMBER, "created_at": T0, "updated_at": T0, **extra}
        return await store.create_expense(
            Expense(
                project_id=project.id,
                department=department,
                amount=Decimal(amount),
                status=status,
                **fields,
            )
        )
    return _make


@pytest.fixture
def make_delegation(store):
    """Factory that stores a delegation record directly."""
    async def _make(
        project: Project,
        approver_id: str = DELEGATE,
        start: datetime = T0,
        end: datetime = T0 + timedelta(days=5),
        status: DelegationStatus = DelegationStatus.ACCEPTED,
        **extra,
    ) -> DelegationRecord:
        return await store.create_delegation(
            DelegationRecord(
                project_id=project.id,
                approver_id=approver_id,
                start_date=start,
                end_date=end,
                status=status,
                **extra,
            )
        )
    return _make


@pytest.fixture
def core(store, clock, audit_logger, settings) -> BudgetControlCore:
    return BudgetControlCore(store, clock=clock, audit_logger=audit_logger, settings=settings)
