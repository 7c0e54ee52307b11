"""
Audit Logger

Every project edit, expense decision, delegation change and department
migration goes through here. Each event is written to the structlog
stream and, when a backend is configured, appended to audit storage.

An audit write that fails is logged and swallowed: the business
operation that produced the event has already committed.
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from budget_control.config import AppSettings, get_settings
from budget_control.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from budget_control.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(settings: Optional[AppSettings] = None) -> int:
    """
    Set the stdlib level that structlog's filter_by_level reads.

    `debug_mode` forces DEBUG; otherwise `log_level` is used, falling back
    to INFO for unknown names. Returns the level applied.
    """
    settings = settings or get_settings().app
    if settings.debug_mode:
        level = logging.DEBUG
    else:
        level = getattr(logging, settings.log_level.strip().upper(), None)
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)
    return level


class AuditLogger:
    """Writes audit events to the log stream and, optionally, to storage."""

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        self._storage = storage
        self._logger = structlog.get_logger("budget_control.audit")

    async def log(self, event: AuditEvent) -> bool:
        """Emit `event`. Returns False only when the storage append failed."""
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # The operation already happened; keep going
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_project_created(self, project_id: str, name: str, actor_id: str) -> None:
        await self.log(AuditEventBuilder.project_created(project_id, name, actor_id))

    async def log_project_updated(
        self,
        project_id: str,
        changed_fields: list[str],
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.project_updated(
                project_id=project_id,
                changed_fields=changed_fields,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )
        )

    async def log_expense_submitted(
        self,
        expense_id: str,
        project_id: str,
        department: str,
        amount: str,
        actor_id: str,
    ) -> None:
        await self.log(
            AuditEventBuilder.expense_submitted(
                expense_id=expense_id,
                project_id=project_id,
                department=department,
                amount=amount,
                actor_id=actor_id,
            )
        )

    async def log_expense_transitioned(
        self,
        expense_id: str,
        project_id: str,
        approved: bool,
        actor_id: str,
        via_delegation: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an approval or rejection."""
        await self.log(
            AuditEventBuilder.expense_transitioned(
                expense_id=expense_id,
                project_id=project_id,
                approved=approved,
                actor_id=actor_id,
                via_delegation=via_delegation,
                correlation_id=correlation_id,
            )
        )

    async def log_transition_denied(
        self,
        expense_id: str,
        actor_id: str,
        reason: str,
        error_code: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.transition_denied(
                expense_id=expense_id,
                actor_id=actor_id,
                reason=reason,
                error_code=error_code,
                correlation_id=correlation_id,
            )
        )

    async def log_delegation_event(
        self,
        event_type: AuditEventType,
        delegation_id: Optional[str],
        project_id: str,
        approver_id: Optional[str],
        actor_id: str,
        details: Optional[dict] = None,
    ) -> None:
        """Log a delegation lifecycle change."""
        await self.log(
            AuditEventBuilder.delegation_changed(
                event_type=event_type,
                delegation_id=delegation_id,
                project_id=project_id,
                approver_id=approver_id,
                actor_id=actor_id,
                details=details,
            )
        )

    async def log_department_migrated(
        self,
        project_id: str,
        department: str,
        expense_ids: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.department_migrated(
                project_id=project_id,
                department=department,
                expense_ids=expense_ids,
                correlation_id=correlation_id,
            )
        )

    async def log_department_migration_failed(
        self,
        project_id: str,
        department: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.department_migration_failed(
                project_id=project_id,
                department=department,
                error_code=error_code,
                error_message=error_message,
                correlation_id=correlation_id,
            )
        )

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(
            AuditEventBuilder.system_error(
                error_type=error_type,
                error_message=error_message,
                details=details,
                correlation_id=correlation_id,
            )
        )


def create_correlation_id() -> UUID:
    """New id tying together the events of one request, e.g. one project edit."""
    return uuid4()
