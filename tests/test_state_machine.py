"""Tests for the expense state machine."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from budget_control.errors import (
    ErrorKind,
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from budget_control.expenses import ExpenseStateMachine
from budget_control.models import (
    AuditEventType,
    Expense,
    ExpenseStatus,
    ProjectStatus,
    UserRole,
)
from budget_control.services.storage import InMemoryDocumentStore

from conftest import ADMIN, DELEGATE, MANAGER, MEMBER, T0, directory_users


class InterferingStore(InMemoryDocumentStore):
    """Lets another writer change an expense right before each of our writes."""

    def __init__(self, change: dict, times: int = 1):
        super().__init__(users=directory_users())
        self.change = change
        self.times = times

    async def update_expenses_atomically(self, expenses):
        if self.times > 0:
            self.times -= 1
            for expense in expenses:
                stored = self._expenses[expense.id]
                self._expenses[expense.id] = stored.model_copy(
                    update={**self.change, "version": stored.version + 1}
                )
        return await super().update_expenses_atomically(expenses)


class SlowStore(InMemoryDocumentStore):
    """Hangs on reads of selected expenses."""

    def __init__(self, slow_ids: set[str]):
        super().__init__(users=directory_users())
        self.slow_ids = slow_ids

    async def get_expense(self, expense_id):
        if expense_id in self.slow_ids:
            await asyncio.sleep(1)
        return await super().get_expense(expense_id)


@pytest.fixture
def machine(store, clock, audit_logger, settings) -> ExpenseStateMachine:
    return ExpenseStateMachine(
        store, clock=clock, audit_logger=audit_logger, settings=settings
    )


class TestTransition:
    """Single-expense transitions."""

    @pytest.mark.asyncio
    async def test_manager_approves(self, machine, project, make_expense, clock):
        expense = await make_expense(project, "Art", "300")
        clock.advance(timedelta(hours=1))

        saved = await machine.transition(
            expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER, "  Looks fine "
        )

        assert saved.status == ExpenseStatus.APPROVED
        assert saved.approved_by == MANAGER
        assert saved.approved_at == T0 + timedelta(hours=1)
        assert saved.remark == "Looks fine"
        assert saved.amount == Decimal("300")
        assert saved.version == expense.version + 1

    @pytest.mark.asyncio
    async def test_manager_rejects_with_string_target(self, machine, project, make_expense):
        expense = await make_expense(project, "Art", "300")
        saved = await machine.transition(expense.id, "REJECTED", MANAGER, "APPROVER")
        assert saved.status == ExpenseStatus.REJECTED

    @pytest.mark.asyncio
    async def test_blank_remark_keeps_existing(self, machine, project, make_expense):
        expense = await make_expense(project, "Art", "300", remark="Paint for set B")
        saved = await machine.transition(
            expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER, "   "
        )
        assert saved.remark == "Paint for set B"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target,text", [
        (ExpenseStatus.APPROVED, "Admin approved"),
        (ExpenseStatus.REJECTED, "Admin rejected"),
    ])
    async def test_admin_remark_always_overwritten(
        self, machine, project, make_expense, target, text
    ):
        expense = await make_expense(project, "Art", "300")
        saved = await machine.transition(
            expense.id, target, ADMIN, UserRole.ADMIN, "My own words"
        )
        assert saved.remark == text
        assert saved.approved_by == ADMIN

    @pytest.mark.asyncio
    async def test_outsider_is_unauthorized(
        self, machine, project, make_expense, store, audit_storage
    ):
        expense = await make_expense(project, "Art", "300")

        with pytest.raises(UnauthorizedError):
            await machine.transition(
                expense.id, ExpenseStatus.APPROVED, MEMBER, UserRole.USER
            )

        stored = await store.get_expense(expense.id)
        assert stored.status == ExpenseStatus.PENDING
        assert stored.version == expense.version
        denied = [
            e for e in audit_storage.events
            if e.event_type == AuditEventType.TRANSITION_DENIED
        ]
        assert len(denied) == 1
        assert denied[0].error_code == ErrorKind.UNAUTHORIZED.value

    @pytest.mark.asyncio
    async def test_terminal_expense_is_not_overwritten(
        self, machine, project, make_expense, store
    ):
        expense = await make_expense(project, "Art", "300")
        await machine.transition(expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER)

        with pytest.raises(InvalidStateTransitionError):
            await machine.transition(
                expense.id, ExpenseStatus.REJECTED, ADMIN, UserRole.ADMIN
            )

        stored = await store.get_expense(expense.id)
        assert stored.status == ExpenseStatus.APPROVED
        assert stored.approved_by == MANAGER

    @pytest.mark.asyncio
    async def test_pending_is_not_a_target(self, machine, project, make_expense):
        expense = await make_expense(project, "Art", "300")
        with pytest.raises(InvalidStateTransitionError):
            await machine.transition(expense.id, ExpenseStatus.PENDING, ADMIN, UserRole.ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_target(self, machine, project, make_expense):
        expense = await make_expense(project, "Art", "300")
        with pytest.raises(ValidationError):
            await machine.transition(expense.id, "ARCHIVED", ADMIN, UserRole.ADMIN)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["approved", " Approved ", "APPROVED"])
    async def test_target_is_case_insensitive(self, machine, project, make_expense, target):
        expense = await make_expense(project, "Art", "300")
        saved = await machine.transition(expense.id, target, MANAGER, UserRole.APPROVER)
        assert saved.status == ExpenseStatus.APPROVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("caller_id", [None, "", "   "])
    async def test_missing_caller_is_a_validation_error(
        self, machine, project, make_expense, caller_id
    ):
        """An absent caller is never treated as an implicit admin."""
        expense = await make_expense(project, "Art", "300")
        with pytest.raises(ValidationError):
            await machine.transition(expense.id, ExpenseStatus.APPROVED, caller_id, UserRole.ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_expense(self, machine, project):
        with pytest.raises(NotFoundError):
            await machine.transition("nope", ExpenseStatus.APPROVED, ADMIN, UserRole.ADMIN)


class TestDelegatedTransition:
    """Transitions made under a delegation."""

    @pytest.mark.asyncio
    async def test_delegate_in_window_is_recorded(
        self, machine, project, make_expense, make_delegation, store, clock, audit_storage
    ):
        record = await make_delegation(project)
        expense = await make_expense(project, "Props", "120")
        clock.advance(timedelta(days=2))

        saved = await machine.transition(
            expense.id, ExpenseStatus.APPROVED, DELEGATE, UserRole.APPROVER
        )

        assert saved.approved_by == DELEGATE
        stored = await store.get_delegation(project.id, record.id)
        assert stored.approved_expense == [expense.id]
        approved = [
            e for e in audit_storage.events
            if e.event_type == AuditEventType.EXPENSE_APPROVED
        ]
        assert approved[0].details == {"delegation_id": record.id}

    @pytest.mark.asyncio
    async def test_manager_action_not_recorded_on_delegation(
        self, machine, project, make_expense, make_delegation, store
    ):
        record = await make_delegation(project)
        expense = await make_expense(project, "Props", "120")

        await machine.transition(expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER)

        stored = await store.get_delegation(project.id, record.id)
        assert stored.approved_expense == []

    @pytest.mark.asyncio
    async def test_delegate_after_window_is_unauthorized(
        self, machine, project, make_expense, make_delegation, clock
    ):
        await make_delegation(project)
        expense = await make_expense(project, "Props", "120")
        clock.advance(timedelta(days=6))

        with pytest.raises(UnauthorizedError):
            await machine.transition(
                expense.id, ExpenseStatus.APPROVED, DELEGATE, UserRole.APPROVER
            )




async def seed(store, project, department="Art", amount="50"):
    return await store.create_expense(
        Expense(
            project_id=project.id,
            department=department,
            amount=Decimal(amount),
            submitted_by=MEMBER,
            created_at=T0,
            updated_at=T0,
        )
    )


class TestConcurrentWriters:
    """Conditional writes and re-evaluation after a conflict."""

    @pytest.mark.asyncio
    async def test_lost_race_surfaces_as_invalid_transition(
        self, clock, audit_logger, settings, sample_project
    ):
        store = InterferingStore({"status": ExpenseStatus.REJECTED, "approved_by": ADMIN})
        project = await store.create_project(sample_project)
        expense = await seed(store, project)
        machine = ExpenseStateMachine(
            store, clock=clock, audit_logger=audit_logger, settings=settings
        )

        with pytest.raises(InvalidStateTransitionError):
            await machine.transition(expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER)

        stored = await store.get_expense(expense.id)
        assert stored.status == ExpenseStatus.REJECTED
        assert stored.approved_by == ADMIN

    @pytest.mark.asyncio
    async def test_unrelated_change_is_retried(
        self, clock, audit_logger, settings, sample_project
    ):
        store = InterferingStore({"description": "receipt attached"})
        project = await store.create_project(sample_project)
        expense = await seed(store, project)
        machine = ExpenseStateMachine(
            store, clock=clock, audit_logger=audit_logger, settings=settings
        )

        saved = await machine.transition(
            expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER
        )

        assert saved.status == ExpenseStatus.APPROVED
        assert saved.description == "receipt attached"
        assert saved.version == expense.version + 2

    @pytest.mark.asyncio
    async def test_gives_up_after_configured_retries(
        self, clock, audit_logger, settings, sample_project
    ):
        store = InterferingStore({"description": "again"}, times=100)
        project = await store.create_project(sample_project)
        expense = await seed(store, project)
        machine = ExpenseStateMachine(
            store, clock=clock, audit_logger=audit_logger, settings=settings
        )

        with pytest.raises(VersionConflictError):
            await machine.transition(expense.id, ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER)

        # One first attempt plus max_conflict_retries re-reads
        assert store.times == 100 - (settings.max_conflict_retries + 1)


class TestBulkTransition:
    """Itemized multi-expense transitions."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_undo_another(
        self, machine, project, make_expense, store
    ):
        e1 = await make_expense(project, "Art", "100")
        e2 = await make_expense(project, "Art", "200", status=ExpenseStatus.APPROVED)

        result = await machine.transition_many(
            [e1.id, e2.id], ExpenseStatus.APPROVED, MANAGER, UserRole.APPROVER
        )

        assert result.success_count == 1
        assert result.failure_count == 1
        first, second = result.outcomes
        assert first.expense_id == e1.id and first.success
        assert second.expense_id == e2.id
        assert second.error_kind == ErrorKind.INVALID_STATE_TRANSITION
        assert second.status == ExpenseStatus.APPROVED
        assert (await store.get_expense(e1.id)).status == ExpenseStatus.APPROVED

    @pytest.mark.asyncio
    async def test_every_kind_of_failure_is_itemized(
        self, machine, project, make_expense, store, sample_project
    ):
        other = await store.create_project(
            sample_project.model_copy(update={"id": "proj-other", "manager_id": ADMIN})
        )
        mine = await make_expense(project, "Art", "100")
        theirs = await make_expense(other, "Art", "100")

        result = await machine.transition_many(
            ["missing", theirs.id, mine.id],
            ExpenseStatus.REJECTED,
            MANAGER,
            UserRole.APPROVER,
        )

        kinds = [o.error_kind for o in result.outcomes]
        assert kinds == [ErrorKind.NOT_FOUND, ErrorKind.UNAUTHORIZED, None]
        assert result.succeeded[0].expense_id == mine.id

    @pytest.mark.asyncio
    async def test_bad_caller_fails_the_whole_request(self, machine, project, make_expense):
        expense = await make_expense(project, "Art", "100")
        with pytest.raises(ValidationError):
            await machine.transition_many([expense.id], ExpenseStatus.APPROVED, "", UserRole.ADMIN)

    @pytest.mark.asyncio
    async def test_slow_item_reported_as_transient(
        self, clock, audit_logger, settings, sample_project
    ):
        store = SlowStore(slow_ids=set())
        project = await store.create_project(sample_project)
        fast = await seed(store, project)
        slow = await seed(store, project)
        store.slow_ids.add(slow.id)
        machine = ExpenseStateMachine(
            store, clock=clock, audit_logger=audit_logger, settings=settings
        )

        result = await machine.transition_many(
            [slow.id, fast.id],
            ExpenseStatus.APPROVED,
            ADMIN,
            UserRole.ADMIN,
            item_timeout=0.05,
        )

        assert result.outcomes[0].error_kind == ErrorKind.TRANSIENT_STORE_ERROR
        assert result.outcomes[1].success
        assert (await store.get_expense(slow.id)).status == ExpenseStatus.PENDING


class TestPendingApprovals:
    """The queue of pending expenses a caller may act on."""

    @pytest.mark.asyncio
    async def test_manager_sees_pending_newest_first(self, machine, project, make_expense):
        older = await make_expense(project, "Art", "100")
        newer = await make_expense(project, "Props", "50", created_at=T0 + timedelta(hours=1))
        await make_expense(project, "Art", "70", status=ExpenseStatus.APPROVED)
        await make_expense(project, "Art", "80", status=ExpenseStatus.REJECTED)

        queue = await machine.pending_approvals(MANAGER, UserRole.APPROVER)

        assert [e.id for e in queue] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_department_filter(self, machine, project, make_expense):
        await make_expense(project, "Art", "100")
        props = await make_expense(project, "Props", "50")

        queue = await machine.pending_approvals(MANAGER, UserRole.APPROVER, department="Props")

        assert [e.id for e in queue] == [props.id]

    @pytest.mark.asyncio
    async def test_team_member_sees_nothing(self, machine, project, make_expense):
        await make_expense(project, "Art", "100")
        assert await machine.pending_approvals(MEMBER, UserRole.USER) == []

    @pytest.mark.asyncio
    async def test_delegate_sees_project_only_inside_window(
        self, machine, project, make_expense, make_delegation, clock
    ):
        await make_delegation(project)
        expense = await make_expense(project, "Art", "100")

        clock.advance(timedelta(days=1))
        assert [e.id for e in await machine.pending_approvals(DELEGATE, UserRole.APPROVER)] == [
            expense.id
        ]

        clock.advance(timedelta(days=10))
        assert await machine.pending_approvals(DELEGATE, UserRole.APPROVER) == []

    @pytest.mark.asyncio
    async def test_admin_sees_every_project(
        self, machine, project, make_expense, store, sample_project
    ):
        other = await store.create_project(
            sample_project.model_copy(update={"id": "proj-doc", "manager_id": DELEGATE})
        )
        mine = await make_expense(project, "Art", "100")
        theirs = await make_expense(other, "Art", "100", created_at=T0 + timedelta(minutes=5))

        admin_queue = await machine.pending_approvals(ADMIN, UserRole.ADMIN)
        manager_queue = await machine.pending_approvals(MANAGER, UserRole.APPROVER)

        assert [e.id for e in admin_queue] == [theirs.id, mine.id]
        assert [e.id for e in manager_queue] == [mine.id]

    @pytest.mark.asyncio
    async def test_missing_caller_is_a_validation_error(self, machine, project):
        with pytest.raises(ValidationError):
            await machine.pending_approvals("", UserRole.ADMIN)


class TestSubmitExpense:
    """Creating pending expenses."""

    @pytest.mark.asyncio
    async def test_member_submits(self, machine, project, audit_storage):
        expense = await machine.submit_expense(
            project.id, " Art ", "45.50", MEMBER, UserRole.USER, description="Brushes"
        )
        assert expense.status == ExpenseStatus.PENDING
        assert expense.department == "Art"
        assert expense.amount == Decimal("45.50")
        assert expense.submitted_by == MEMBER
        assert audit_storage.events[-1].event_type == AuditEventType.EXPENSE_SUBMITTED

    @pytest.mark.asyncio
    async def test_outsider_cannot_submit(self, machine, project):
        with pytest.raises(UnauthorizedError):
            await machine.submit_expense(project.id, "Art", "10", DELEGATE, UserRole.APPROVER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("department,amount", [
        ("Art", "0"),
        ("Art", "-3"),
        ("Art", "1.234"),
        ("Art", "abc"),
        ("Catering", "10"),
    ])
    async def test_invalid_expense_rejected(self, machine, project, store, department, amount):
        with pytest.raises(ValidationError):
            await machine.submit_expense(project.id, department, amount, MEMBER, UserRole.USER)
        assert await store.list_expenses(project.id) == []

    @pytest.mark.asyncio
    async def test_closed_project_rejects_expenses(self, machine, project, store):
        await store.update_project(project.model_copy(update={"status": ProjectStatus.COMPLETED}))
        with pytest.raises(ValidationError):
            await machine.submit_expense(project.id, "Art", "10", MEMBER, UserRole.USER)
