"""
Error Kinds for Budget Control

Every failure the core can report maps to one ErrorKind. Bulk operations
record the kind per item instead of raising, so callers always see which
items went through and which did not.

DESIGN DECISION: Validation and authorization errors are raised BEFORE any
write is attempted. Transient store errors are never retried here; they
propagate to the caller.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable failure classification."""
    NOT_FOUND = "not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    UNAUTHORIZED = "unauthorized"
    VALIDATION_ERROR = "validation_error"
    TRANSIENT_STORE_ERROR = "transient_store_error"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    VERSION_CONFLICT = "version_conflict"


class BudgetControlError(Exception):
    """Base exception for all core errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BudgetControlError):
    """A project, expense, delegation or user does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidStateTransitionError(BudgetControlError):
    """Attempted to move a record out of a terminal state."""

    kind = ErrorKind.INVALID_STATE_TRANSITION

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class UnauthorizedError(BudgetControlError):
    """Caller is neither admin nor in the resolved authority set."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, caller_id: str, action: str):
        super().__init__(f"Caller {caller_id!r} is not allowed to {action}")
        self.caller_id = caller_id
        self.action = action


class ValidationError(BudgetControlError):
    """
    Input failed validation.

    Carries the individual issues so a client can show them field by field.
    """

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message)
        self.issues = issues or []


class PartialBatchFailure(BudgetControlError):
    """Some items of a bulk operation failed; the rest were committed."""

    kind = ErrorKind.PARTIAL_BATCH_FAILURE

    def __init__(self, message: str, failed: list[str], succeeded: list[str]):
        super().__init__(message)
        self.failed = failed
        self.succeeded = succeeded


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StorageError(BudgetControlError):
    """Base exception for storage operations."""

    kind = ErrorKind.TRANSIENT_STORE_ERROR


class TransientStoreError(StorageError):
    """Network/IO failure or timeout. Safe for the caller to retry."""

    kind = ErrorKind.TRANSIENT_STORE_ERROR


class VersionConflictError(StorageError):
    """A conditional write lost against a concurrent writer."""

    kind = ErrorKind.VERSION_CONFLICT

    def __init__(self, entity_type: str, entity_id: str, expected: int, actual: int):
        super().__init__(
            f"{entity_type} {entity_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual

