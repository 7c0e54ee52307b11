"""Tests for the delegation lifecycle."""

from datetime import timedelta

import pytest

from budget_control.delegation import DelegationService
from budget_control.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from budget_control.models import (
    AuditEventType,
    Caller,
    DelegationPhase,
    DelegationStatus,
    UserRole,
)

from conftest import ADMIN, DELEGATE, DORMANT, MANAGER, MEMBER, T0

MANAGER_CALLER = Caller(user_id=MANAGER, role=UserRole.APPROVER)
DELEGATE_CALLER = Caller(user_id=DELEGATE, role=UserRole.APPROVER)
MEMBER_CALLER = Caller(user_id=MEMBER, role=UserRole.USER)
ADMIN_CALLER = Caller(user_id=ADMIN, role=UserRole.ADMIN)

START = T0 + timedelta(days=1)
END = T0 + timedelta(days=6)


@pytest.fixture
def service(store, clock, audit_logger, settings) -> DelegationService:
    return DelegationService(store, clock=clock, audit_logger=audit_logger, settings=settings)


class TestGrant:
    """Granting a delegation."""

    @pytest.mark.asyncio
    async def test_manager_grants(self, service, project, store, audit_storage):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        assert record.status == DelegationStatus.PENDING
        assert record.approver_id == DELEGATE
        assert (await store.get_project(project.id)).temp_approver_id == DELEGATE
        assert audit_storage.events[-1].event_type == AuditEventType.DELEGATION_GRANTED

    @pytest.mark.asyncio
    async def test_pending_grant_gives_no_authority(self, service, project, clock):
        await service.grant_delegation(project.id, DELEGATE, START, END, ADMIN_CALLER)
        clock.advance(timedelta(days=2))
        authority = await service.current_authority(project.id)
        assert authority.members == frozenset({MANAGER})

    @pytest.mark.asyncio
    async def test_member_cannot_grant(self, service, project):
        with pytest.raises(UnauthorizedError):
            await service.grant_delegation(project.id, DELEGATE, START, END, MEMBER_CALLER)

    @pytest.mark.asyncio
    async def test_unknown_approver(self, service, project):
        with pytest.raises(NotFoundError):
            await service.grant_delegation(project.id, "0000", START, END, MANAGER_CALLER)

    @pytest.mark.asyncio
    async def test_inactive_approver(self, service, project):
        with pytest.raises(ValidationError):
            await service.grant_delegation(project.id, DORMANT, START, END, MANAGER_CALLER)

    @pytest.mark.asyncio
    async def test_manager_cannot_delegate_to_self(self, service, project):
        with pytest.raises(ValidationError):
            await service.grant_delegation(project.id, MANAGER, START, END, ADMIN_CALLER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start,end", [
        (END, START),
        (START, START),
        (T0 - timedelta(days=5), T0 - timedelta(days=1)),
    ])
    async def test_bad_window(self, service, project, store, start, end):
        with pytest.raises(ValidationError):
            await service.grant_delegation(project.id, DELEGATE, start, end, MANAGER_CALLER)
        assert await store.list_delegations(project.id) == []

    @pytest.mark.asyncio
    async def test_unknown_project(self, service):
        with pytest.raises(NotFoundError):
            await service.grant_delegation("missing", DELEGATE, START, END, ADMIN_CALLER)


class TestAnswer:
    """Accepting and rejecting."""

    @pytest.mark.asyncio
    async def test_accept_then_authority_follows_clock(self, service, project, clock):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        accepted = await service.accept_delegation(project.id, record.id, DELEGATE_CALLER)
        assert accepted.status == DelegationStatus.ACCEPTED

        assert DELEGATE not in await service.current_authority(project.id)
        clock.advance(timedelta(days=2))
        assert DELEGATE in await service.current_authority(project.id)
        clock.advance(timedelta(days=5))
        assert DELEGATE not in await service.current_authority(project.id)

    @pytest.mark.asyncio
    async def test_only_named_approver_answers(self, service, project):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        with pytest.raises(UnauthorizedError):
            await service.accept_delegation(project.id, record.id, MANAGER_CALLER)

    @pytest.mark.asyncio
    async def test_answers_are_terminal(self, service, project):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        await service.accept_delegation(project.id, record.id, DELEGATE_CALLER)
        with pytest.raises(InvalidStateTransitionError):
            await service.reject_delegation(project.id, record.id, DELEGATE_CALLER, "Changed my mind")

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, service, project):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        with pytest.raises(ValidationError):
            await service.reject_delegation(project.id, record.id, DELEGATE_CALLER, "  ")

    @pytest.mark.asyncio
    async def test_reject_clears_pointer_and_keeps_record(self, service, project, store):
        record = await service.grant_delegation(
            project.id, DELEGATE, START, END, MANAGER_CALLER
        )
        rejected = await service.reject_delegation(
            project.id, record.id, DELEGATE_CALLER, "On another shoot"
        )
        assert rejected.status == DelegationStatus.REJECTED
        assert rejected.rejection_reason == "On another shoot"
        assert (await store.get_project(project.id)).temp_approver_id is None
        assert len(await store.list_delegations(project.id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_delegation(self, service, project):
        with pytest.raises(NotFoundError):
            await service.accept_delegation(project.id, "missing", DELEGATE_CALLER)


class TestDetachAndTrail:
    """Detaching a delegate and the approved-expense trail."""

    @pytest.mark.asyncio
    async def test_detach_clears_pointer_only(
        self, service, project, make_delegation, store, clock
    ):
        record = await make_delegation(project)
        await store.update_project(project.model_copy(update={"temp_approver_id": DELEGATE}))
        clock.advance(timedelta(days=1))

        updated = await service.detach_delegate(project.id, MANAGER_CALLER)

        assert updated.temp_approver_id is None
        stored = await store.get_delegation(project.id, record.id)
        assert stored.status == DelegationStatus.ACCEPTED
        assert DELEGATE in await service.current_authority(project.id)

    @pytest.mark.asyncio
    async def test_member_cannot_detach(self, service, project):
        with pytest.raises(UnauthorizedError):
            await service.detach_delegate(project.id, MEMBER_CALLER)

    @pytest.mark.asyncio
    async def test_trail_is_append_only(self, service, project, make_delegation):
        record = await make_delegation(project)
        await service.record_acted_expense(project.id, record.id, "e1")
        await service.record_acted_expense(project.id, record.id, "e2")
        again = await service.record_acted_expense(project.id, record.id, "e1")
        assert again.approved_expense == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_list_with_phases(self, service, project, make_delegation, clock):
        await make_delegation(
            project,
            start=T0 - timedelta(days=10),
            end=T0 - timedelta(days=5),
            created_at=T0 - timedelta(days=10),
        )
        await make_delegation(project, start=T0, end=T0 + timedelta(days=3), created_at=T0)

        views = await service.list_delegations(project.id)

        assert [v.phase for v in views] == [DelegationPhase.ACTIVE, DelegationPhase.EXPIRED]
        assert all(v.as_of == T0 for v in views)
