"""
Delegation Resolver

Answers one question: who may approve or reject this project's expenses
right now?

RULES:
- The project manager always holds authority.
- At most one delegate is added: the approver of an ACCEPTED record whose
  window contains `as_of` (both ends inclusive).
- When several accepted windows overlap, the record with the latest
  start_date wins, then the latest created_at, then the largest id.

The project's `temp_approver_id` is deliberately not consulted.
"""

from datetime import datetime
from typing import Iterable, Optional

from budget_control.clock import ensure_utc
from budget_control.models.delegation import (
    AuthoritySet,
    DelegationPhase,
    DelegationRecord,
    DelegationStatus,
)
from budget_control.models.project import Project


def delegation_phase(record: DelegationRecord, as_of: datetime) -> DelegationPhase:
    return record.phase_at(as_of)


def _precedence(record: DelegationRecord) -> tuple:
    return (record.start_date, record.created_at, record.id)


def effective_delegation(
    records: Iterable[DelegationRecord],
    as_of: datetime,
) -> Optional[DelegationRecord]:
    """Return the single record in force at `as_of`, or None."""
    as_of = ensure_utc(as_of)
    in_force = [
        r for r in records
        if r.status == DelegationStatus.ACCEPTED and r.covers(as_of)
    ]
    if not in_force:
        return None
    return max(in_force, key=_precedence)


def resolve_authority(
    project: Project,
    records: Iterable[DelegationRecord],
    as_of: datetime,
) -> AuthoritySet:
    """
    Build the authority set of a project at `as_of`.

    Records of other projects are ignored.
    """
    as_of = ensure_utc(as_of)
    own = [r for r in records if r.project_id == project.id]
    chosen = effective_delegation(own, as_of)
    return AuthoritySet(
        project_id=project.id,
        as_of=as_of,
        manager_id=project.manager_id,
        delegate_id=chosen.approver_id if chosen else None,
        delegation_id=chosen.id if chosen else None,
    )
