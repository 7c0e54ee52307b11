"""
User Directory Models

The core only needs to know who a caller is and what role they hold.
Sign-in itself is handled outside the core.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from budget_control.clock import utc_now


class UserRole(str, Enum):
    """
    Roles known to the directory.

    ADMIN bypasses the authority check on expenses.
    APPROVER may manage projects or receive delegations.
    USER submits expenses.
    """
    ADMIN = "ADMIN"
    APPROVER = "APPROVER"
    USER = "USER"


class User(BaseModel):
    """A directory entry. `id` is the phone number, or the email for admins."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole
    is_active: bool = True
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class Caller(BaseModel):
    """
    Identity of whoever invokes an authority-checked operation.

    DESIGN DECISION: The identity is mandatory and never defaulted.
    A blank id is a validation error, not an implicit "Admin".
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    user_id: str = Field(..., min_length=1)
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
