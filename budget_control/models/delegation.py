"""
Delegation Models

A delegation record grants someone other than the permanent manager the
right to approve expenses during a time window.

DESIGN DECISION: Only PENDING / ACCEPTED / REJECTED are ever stored.
Whether an accepted delegation is currently in force is computed against
server time on every read (see DelegationPhase). Persisting "active"
would drift the moment the window closes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from budget_control.clock import ensure_utc, new_id, utc_now


class DelegationStatus(str, Enum):
    """Stored status. ACCEPTED and REJECTED are terminal for a record."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DelegationPhase(str, Enum):
    """
    Computed view of a record at an instant.

    PENDING -> (ACCEPTED) -> SCHEDULED | ACTIVE | EXPIRED
    PENDING -> REJECTED
    """
    PENDING = "pending"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"  # accepted, window not started yet
    ACTIVE = "active"        # accepted, inside the window
    EXPIRED = "expired"      # accepted, window over


class DelegationRecord(BaseModel):
    """A time-bounded grant of approval authority."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    project_id: str = Field(..., min_length=1)
    approver_id: str = Field(..., min_length=1)
    start_date: datetime
    end_date: datetime
    status: DelegationStatus = DelegationStatus.PENDING
    rejection_reason: Optional[str] = Field(default=None, max_length=500)

    # Append-only: expense ids acted on under this delegation
    approved_expense: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date", "created_at", "updated_at")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def validate_window(self) -> "DelegationRecord":
        if self.end_date <= self.start_date:
            raise ValueError("Delegation end date must be after start date")
        if self.status == DelegationStatus.REJECTED and not self.rejection_reason:
            raise ValueError("A rejected delegation needs a rejection reason")
        return self

    def covers(self, instant: datetime) -> bool:
        """Inclusive window check: start <= instant <= end."""
        instant = ensure_utc(instant)
        return self.start_date <= instant <= self.end_date

    def phase_at(self, instant: datetime) -> DelegationPhase:
        if self.status == DelegationStatus.PENDING:
            return DelegationPhase.PENDING
        if self.status == DelegationStatus.REJECTED:
            return DelegationPhase.REJECTED
        instant = ensure_utc(instant)
        if instant < self.start_date:
            return DelegationPhase.SCHEDULED
        if instant > self.end_date:
            return DelegationPhase.EXPIRED
        return DelegationPhase.ACTIVE


class DelegationView(BaseModel):
    """A record paired with its phase at a given instant."""
    model_config = ConfigDict(frozen=True)

    record: DelegationRecord
    phase: DelegationPhase
    as_of: datetime


class AuthoritySet(BaseModel):
    """
    Identities allowed to approve or reject expenses of a project at `as_of`.

    Always contains the manager; contains at most one delegate.
    """
    model_config = ConfigDict(frozen=True)

    project_id: str
    as_of: datetime
    manager_id: str
    delegate_id: Optional[str] = None
    delegation_id: Optional[str] = None

    @property
    def members(self) -> frozenset[str]:
        if self.delegate_id:
            return frozenset({self.manager_id, self.delegate_id})
        return frozenset({self.manager_id})

    def __contains__(self, user_id: object) -> bool:
        return user_id in self.members

    def __len__(self) -> int:
        return len(self.members)

    def acts_through_delegation(self, user_id: str) -> bool:
        """True when `user_id` holds authority only because of the delegation."""
        return user_id == self.delegate_id and user_id != self.manager_id
