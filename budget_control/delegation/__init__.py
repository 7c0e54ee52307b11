"""Delegation resolution and lifecycle."""

from budget_control.delegation.resolver import (
    delegation_phase,
    effective_delegation,
    resolve_authority,
)
from budget_control.delegation.service import DelegationService

__all__ = [
    "DelegationService",
    "delegation_phase",
    "effective_delegation",
    "resolve_authority",
]
