"""
Audit Models for Budget Control

Every mutation of a project, expense or delegation is recorded as an
audit event. This provides:
1. Traceability of who approved what, and under which authority
2. A record of department deletions and where their expenses went
3. Debugging information when a store write fails

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from budget_control.clock import utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Projects
    PROJECT_CREATED = "project_created"
    PROJECT_UPDATED = "project_updated"

    # Expenses
    EXPENSE_SUBMITTED = "expense_submitted"
    EXPENSE_APPROVED = "expense_approved"
    EXPENSE_REJECTED = "expense_rejected"
    TRANSITION_DENIED = "transition_denied"

    # Delegations
    DELEGATION_GRANTED = "delegation_granted"
    DELEGATION_ACCEPTED = "delegation_accepted"
    DELEGATION_REJECTED = "delegation_rejected"
    DELEGATE_DETACHED = "delegate_detached"

    # Department migration
    DEPARTMENT_MIGRATED = "department_migrated"
    DEPARTMENT_MIGRATION_FAILED = "department_migration_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utc_now)

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # What entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'project', 'expense', 'delegation')"
    )
    entity_id: Optional[str] = None
    project_id: Optional[str] = None

    # Who did it?
    actor_id: Optional[str] = None

    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Ties together events of one request (e.g., one project edit)"
    )

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "actor_id": self.actor_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         project_id, actor_id, correlation_id, description, details_json,
         error_code, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            self.project_id or "",
            self.actor_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_code or "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_transitioned(expense, actor_id, ...)
        event = AuditEventBuilder.department_migrated(project_id, "Props", ids)
    """

    @staticmethod
    def project_created(project_id: str, name: str, actor_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROJECT_CREATED,
            entity_type="project",
            entity_id=project_id,
            project_id=project_id,
            actor_id=actor_id,
            description=f"Project created: {name}",
            details={"name": name},
        )

    @staticmethod
    def project_updated(
        project_id: str,
        changed_fields: list[str],
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROJECT_UPDATED,
            entity_type="project",
            entity_id=project_id,
            project_id=project_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"Project updated: {', '.join(changed_fields) or 'no changes'}",
            details={"changed_fields": changed_fields},
        )

    @staticmethod
    def expense_submitted(
        expense_id: str,
        project_id: str,
        department: str,
        amount: str,
        actor_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_SUBMITTED,
            entity_type="expense",
            entity_id=expense_id,
            project_id=project_id,
            actor_id=actor_id,
            description=f"Expense submitted: {department} - {amount}",
            details={"department": department, "amount": amount},
        )

    @staticmethod
    def expense_transitioned(
        expense_id: str,
        project_id: str,
        approved: bool,
        actor_id: str,
        via_delegation: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        verb = "approved" if approved else "rejected"
        return AuditEvent(
            event_type=(
                AuditEventType.EXPENSE_APPROVED if approved
                else AuditEventType.EXPENSE_REJECTED
            ),
            entity_type="expense",
            entity_id=expense_id,
            project_id=project_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"Expense {verb} by {actor_id}",
            details={"delegation_id": via_delegation} if via_delegation else {},
        )

    @staticmethod
    def transition_denied(
        expense_id: str,
        actor_id: str,
        reason: str,
        error_code: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSITION_DENIED,
            severity=AuditSeverity.WARNING,
            entity_type="expense",
            entity_id=expense_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description="Expense transition denied",
            error_code=error_code,
            error_message=reason,
        )

    @staticmethod
    def delegation_changed(
        event_type: AuditEventType,
        delegation_id: Optional[str],
        project_id: str,
        approver_id: Optional[str],
        actor_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        labels = {
            AuditEventType.DELEGATION_GRANTED: "Delegation granted",
            AuditEventType.DELEGATION_ACCEPTED: "Delegation accepted",
            AuditEventType.DELEGATION_REJECTED: "Delegation rejected",
            AuditEventType.DELEGATE_DETACHED: "Delegate detached from project",
        }
        return AuditEvent(
            event_type=event_type,
            entity_type="delegation",
            entity_id=delegation_id,
            project_id=project_id,
            actor_id=actor_id,
            description=f"{labels.get(event_type, event_type.value)}: {approver_id or '-'}",
            details={"approver_id": approver_id, **(details or {})},
        )

    @staticmethod
    def department_migrated(
        project_id: str,
        department: str,
        expense_ids: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEPARTMENT_MIGRATED,
            entity_type="department",
            entity_id=department,
            project_id=project_id,
            correlation_id=correlation_id,
            description=(
                f"Moved {len(expense_ids)} expenses from '{department}' "
                "to the anonymous department"
            ),
            details={"expense_ids": expense_ids},
        )

    @staticmethod
    def department_migration_failed(
        project_id: str,
        department: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEPARTMENT_MIGRATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="department",
            entity_id=department,
            project_id=project_id,
            correlation_id=correlation_id,
            description=f"Failed to migrate expenses of deleted department '{department}'",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
