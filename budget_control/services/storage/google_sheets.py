"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is a supported document store because:
1. Production accountants can inspect budgets directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data
- Conditional writes are read-compare-write, so a writer on another
  machine can still slip in between; the version column narrows the gap
- Limited query capabilities (we filter in Python)

ATOMICITY: A department migration is committed with ONE values
batchUpdate request, which Sheets applies as a unit.

gspread is blocking, so every call is pushed to a worker thread.
"""

import asyncio
import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from gspread.utils import rowcol_to_a1
from tenacity import retry, stop_after_attempt, wait_exponential

from budget_control.config import GoogleSheetsSettings, get_settings
from budget_control.errors import (
    NotFoundError,
    StorageError,
    TransientStoreError,
    VersionConflictError,
)
from budget_control.models.audit import AuditEvent, AuditEventType, AuditSeverity
from budget_control.models.delegation import DelegationRecord, DelegationStatus
from budget_control.models.expense import Expense, ExpenseStatus, PaymentMode
from budget_control.models.project import Project, ProjectStatus
from budget_control.models.user import User, UserRole
from budget_control.services.storage.interface import (
    AuditStorageInterface,
    DocumentStore,
)

T = TypeVar("T")


PROJECT_COLUMNS = [
    "id",
    "name",
    "description",
    "budget",
    "departments_json",
    "manager_id",
    "temp_approver_id",
    "team_members_json",
    "status",
    "start_date",
    "end_date",
    "created_at",
    "updated_at",
    "version",
]

EXPENSE_COLUMNS = [
    "id",
    "project_id",
    "department",
    "amount",
    "status",
    "submitted_by",
    "remark",
    "approved_at",
    "approved_by",
    "is_anonymous",
    "original_department",
    "department_deleted_at",
    "expense_date",
    "description",
    "categories_json",
    "mode_of_payment",
    "created_at",
    "updated_at",
    "version",
]

DELEGATION_COLUMNS = [
    "id",
    "project_id",
    "approver_id",
    "start_date",
    "end_date",
    "status",
    "rejection_reason",
    "approved_expense_json",
    "created_at",
    "updated_at",
    "version",
]

USER_COLUMNS = [
    "id",
    "name",
    "role",
    "is_active",
    "email",
    "created_at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "project_id",
    "actor_id",
    "correlation_id",
    "description",
    "details_json",
    "error_code",
    "error_message",
]


def _opt_iso(value: Optional[Any]) -> str:
    return value.isoformat() if value else ""


def _row_reader(row: list) -> Callable[[int], str]:
    """Index into a row, treating short rows and empty cells alike."""
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for connecting.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError as e:
                raise StorageError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                ) from e
            except (gspread.exceptions.GSpreadException, OSError) as e:
                raise TransientStoreError(f"Failed to connect to Google Sheets: {e}") from e

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound as e:
                raise StorageError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                ) from e
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with a header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet


class _SheetsBase:
    """Shared plumbing: thread offloading and error mapping."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except StorageError:
            raise
        except (gspread.exceptions.GSpreadException, OSError) as e:
            raise TransientStoreError(f"Google Sheets request failed: {e}") from e
        except (ValueError, TypeError, InvalidOperation) as e:
            # Covers pydantic and JSON decode errors; retrying cannot fix a bad cell
            raise StorageError(f"Malformed row in Google Sheets: {e}") from e

    @staticmethod
    def _row_range(row_number: int, width: int) -> str:
        return f"{rowcol_to_a1(row_number, 1)}:{rowcol_to_a1(row_number, width)}"

    @staticmethod
    def _find_rows(sheet: gspread.Worksheet, key_column: int = 0) -> dict[str, tuple[int, list]]:
        """Map document id -> (1-based row number, row values)."""
        found = {}
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and len(row) > key_column and row[key_column]:
                found[row[key_column]] = (idx, row)
        return found


class GoogleSheetsDocumentStore(_SheetsBase, DocumentStore):
    """
    Google Sheets implementation of the document store.

    One worksheet per collection, one document per row. Nested values
    (department map, team, categories, audit trail) are JSON-encoded.
    """

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _project_to_row(project: Project) -> list:
        return [
            project.id,
            project.name,
            project.description,
            str(project.budget),
            json.dumps({k: str(v) for k, v in project.departments.items()}),
            project.manager_id,
            project.temp_approver_id or "",
            json.dumps(project.team_members),
            project.status.value,
            _opt_iso(project.start_date),
            _opt_iso(project.end_date),
            project.created_at.isoformat(),
            project.updated_at.isoformat(),
            str(project.version),
        ]

    @staticmethod
    def _row_to_project(row: list) -> Project:
        safe_get = _row_reader(row)
        departments = json.loads(safe_get(4, "{}"))
        return Project(
            id=safe_get(0),
            name=safe_get(1),
            description=safe_get(2),
            budget=Decimal(safe_get(3, "0")),
            departments={k: Decimal(v) for k, v in departments.items()},
            manager_id=safe_get(5),
            temp_approver_id=safe_get(6) or None,
            team_members=json.loads(safe_get(7, "[]")),
            status=ProjectStatus(safe_get(8, ProjectStatus.ACTIVE.value)),
            start_date=date.fromisoformat(safe_get(9)) if safe_get(9) else None,
            end_date=date.fromisoformat(safe_get(10)) if safe_get(10) else None,
            created_at=datetime.fromisoformat(safe_get(11)),
            updated_at=datetime.fromisoformat(safe_get(12)),
            version=int(safe_get(13, "0")),
        )

    @staticmethod
    def _expense_to_row(expense: Expense) -> list:
        return [
            expense.id,
            expense.project_id,
            expense.department,
            str(expense.amount),
            expense.status.value,
            expense.submitted_by,
            expense.remark or "",
            _opt_iso(expense.approved_at),
            expense.approved_by or "",
            str(expense.is_anonymous),
            expense.original_department or "",
            _opt_iso(expense.department_deleted_at),
            _opt_iso(expense.expense_date),
            expense.description,
            json.dumps(expense.categories),
            expense.mode_of_payment.value if expense.mode_of_payment else "",
            expense.created_at.isoformat(),
            expense.updated_at.isoformat(),
            str(expense.version),
        ]

    @staticmethod
    def _row_to_expense(row: list) -> Expense:
        safe_get = _row_reader(row)
        return Expense(
            id=safe_get(0),
            project_id=safe_get(1),
            department=safe_get(2),
            amount=Decimal(safe_get(3)),
            status=ExpenseStatus(safe_get(4)),
            submitted_by=safe_get(5),
            remark=safe_get(6) or None,
            approved_at=datetime.fromisoformat(safe_get(7)) if safe_get(7) else None,
            approved_by=safe_get(8) or None,
            is_anonymous=safe_get(9).lower() == "true",
            original_department=safe_get(10) or None,
            department_deleted_at=(
                datetime.fromisoformat(safe_get(11)) if safe_get(11) else None
            ),
            expense_date=date.fromisoformat(safe_get(12)) if safe_get(12) else None,
            description=safe_get(13),
            categories=json.loads(safe_get(14, "[]")),
            mode_of_payment=PaymentMode(safe_get(15)) if safe_get(15) else None,
            created_at=datetime.fromisoformat(safe_get(16)),
            updated_at=datetime.fromisoformat(safe_get(17)),
            version=int(safe_get(18, "0")),
        )

    @staticmethod
    def _delegation_to_row(record: DelegationRecord) -> list:
        return [
            record.id,
            record.project_id,
            record.approver_id,
            record.start_date.isoformat(),
            record.end_date.isoformat(),
            record.status.value,
            record.rejection_reason or "",
            json.dumps(record.approved_expense),
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
            str(record.version),
        ]

    @staticmethod
    def _row_to_delegation(row: list) -> DelegationRecord:
        safe_get = _row_reader(row)
        return DelegationRecord(
            id=safe_get(0),
            project_id=safe_get(1),
            approver_id=safe_get(2),
            start_date=datetime.fromisoformat(safe_get(3)),
            end_date=datetime.fromisoformat(safe_get(4)),
            status=DelegationStatus(safe_get(5)),
            rejection_reason=safe_get(6) or None,
            approved_expense=json.loads(safe_get(7, "[]")),
            created_at=datetime.fromisoformat(safe_get(8)),
            updated_at=datetime.fromisoformat(safe_get(9)),
            version=int(safe_get(10, "0")),
        )

    @staticmethod
    def _row_to_user(row: list) -> User:
        safe_get = _row_reader(row)
        return User(
            id=safe_get(0),
            name=safe_get(1),
            role=UserRole(safe_get(2, UserRole.USER.value)),
            is_active=safe_get(3, "True").lower() == "true",
            email=safe_get(4) or None,
            created_at=datetime.fromisoformat(safe_get(5)),
        )

    # -------------------------------------------------------------------------
    # Worksheets
    # -------------------------------------------------------------------------

    def _projects_sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(self._client.settings.projects_sheet_name, PROJECT_COLUMNS)

    def _expenses_sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.expenses_sheet_name, EXPENSE_COLUMNS, rows=5000
        )

    def _delegations_sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.delegations_sheet_name, DELEGATION_COLUMNS
        )

    def _users_sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(self._client.settings.users_sheet_name, USER_COLUMNS)

    # -------------------------------------------------------------------------
    # Generic sync helpers (run in a worker thread)
    # -------------------------------------------------------------------------

    def _sync_get(self, sheet_getter, parse, doc_id: str):
        rows = self._find_rows(sheet_getter())
        if doc_id not in rows:
            return None
        return parse(rows[doc_id][1])

    def _sync_list(self, sheet_getter, parse) -> list:
        return [parse(row) for _, row in self._find_rows(sheet_getter()).values()]

    def _sync_insert(self, sheet_getter, doc_id: str, row: list, entity_type: str) -> None:
        sheet = sheet_getter()
        if doc_id in self._find_rows(sheet):
            raise StorageError(f"{entity_type} already exists: {doc_id}")
        sheet.append_row(row, value_input_option="RAW")

    def _sync_conditional_write(
        self,
        sheet_getter,
        entity_type: str,
        width: int,
        version_column: int,
        docs: list[tuple[str, int, list]],
    ) -> None:
        """
        Write rows for (doc_id, expected_version, new_row) as one batchUpdate.

        Nothing is written if any document is missing or stale.
        """
        sheet = sheet_getter()
        rows = self._find_rows(sheet)
        data = []
        for doc_id, expected, new_row in docs:
            if doc_id not in rows:
                raise NotFoundError(entity_type, doc_id)
            row_number, current = rows[doc_id]
            actual = int(_row_reader(current)(version_column, "0"))
            if actual != expected:
                raise VersionConflictError(entity_type, doc_id, expected=expected, actual=actual)
            data.append({"range": self._row_range(row_number, width), "values": [new_row]})
        if data:
            sheet.batch_update(data, value_input_option="RAW")

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._run(
            self._sync_get, self._projects_sheet, self._row_to_project, project_id
        )

    async def create_project(self, project: Project) -> Project:
        await self._run(
            self._sync_insert,
            self._projects_sheet,
            project.id,
            self._project_to_row(project),
            "Project",
        )
        return project

    async def update_project(self, project: Project) -> Project:
        saved = project.model_copy(update={"version": project.version + 1})
        await self._run(
            self._sync_conditional_write,
            self._projects_sheet,
            "Project",
            len(PROJECT_COLUMNS),
            PROJECT_COLUMNS.index("version"),
            [(project.id, project.version, self._project_to_row(saved))],
        )
        return saved

    async def list_projects(self) -> list[Project]:
        return await self._run(self._sync_list, self._projects_sheet, self._row_to_project)

    # -------------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------------

    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        return await self._run(
            self._sync_get, self._expenses_sheet, self._row_to_expense, expense_id
        )

    async def list_expenses(
        self,
        project_id: str,
        department: Optional[str] = None,
        status: Optional[ExpenseStatus] = None,
    ) -> list[Expense]:
        expenses = await self._run(self._sync_list, self._expenses_sheet, self._row_to_expense)
        results = [
            e for e in expenses
            if e.project_id == project_id
            and (department is None or e.department == department)
            and (status is None or e.status == status)
        ]
        results.sort(key=lambda e: e.created_at)
        return results

    async def create_expense(self, expense: Expense) -> Expense:
        await self._run(
            self._sync_insert,
            self._expenses_sheet,
            expense.id,
            self._expense_to_row(expense),
            "Expense",
        )
        return expense

    async def update_expense(self, expense: Expense) -> Expense:
        return (await self.update_expenses_atomically([expense]))[0]

    async def update_expenses_atomically(self, expenses: list[Expense]) -> list[Expense]:
        saved = [e.model_copy(update={"version": e.version + 1}) for e in expenses]
        await self._run(
            self._sync_conditional_write,
            self._expenses_sheet,
            "Expense",
            len(EXPENSE_COLUMNS),
            EXPENSE_COLUMNS.index("version"),
            [
                (old.id, old.version, self._expense_to_row(new))
                for old, new in zip(expenses, saved)
            ],
        )
        return saved

    # -------------------------------------------------------------------------
    # Delegations
    # -------------------------------------------------------------------------

    async def get_delegation(
        self,
        project_id: str,
        delegation_id: str,
    ) -> Optional[DelegationRecord]:
        record = await self._run(
            self._sync_get, self._delegations_sheet, self._row_to_delegation, delegation_id
        )
        if record is None or record.project_id != project_id:
            return None
        return record

    async def list_delegations(self, project_id: str) -> list[DelegationRecord]:
        records = await self._run(
            self._sync_list, self._delegations_sheet, self._row_to_delegation
        )
        records = [r for r in records if r.project_id == project_id]
        records.sort(key=lambda r: r.created_at)
        return records

    async def create_delegation(self, record: DelegationRecord) -> DelegationRecord:
        await self._run(
            self._sync_insert,
            self._delegations_sheet,
            record.id,
            self._delegation_to_row(record),
            "Delegation",
        )
        return record

    async def update_delegation(self, record: DelegationRecord) -> DelegationRecord:
        saved = record.model_copy(update={"version": record.version + 1})
        await self._run(
            self._sync_conditional_write,
            self._delegations_sheet,
            "Delegation",
            len(DELEGATION_COLUMNS),
            DELEGATION_COLUMNS.index("version"),
            [(record.id, record.version, self._delegation_to_row(saved))],
        )
        return saved

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._run(self._sync_get, self._users_sheet, self._row_to_user, user_id)


class GoogleSheetsAuditStorage(_SheetsBase, AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def _audit_sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(
            self._client.settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )

    @staticmethod
    def _row_to_event(row: list) -> AuditEvent:
        safe_get = _row_reader(row)
        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=safe_get(5) or None,
            project_id=safe_get(6) or None,
            actor_id=safe_get(7) or None,
            correlation_id=UUID(safe_get(8)) if safe_get(8) else None,
            description=safe_get(9),
            details=json.loads(safe_get(10)) if safe_get(10) else {},
            error_code=safe_get(11) or None,
            error_message=safe_get(12) or None,
        )

    def _sync_append(self, event: AuditEvent) -> None:
        self._audit_sheet().append_row(event.to_sheets_row(), value_input_option="RAW")

    def _sync_events(self) -> list[AuditEvent]:
        events = []
        for row in self._audit_sheet().get_all_values()[1:]:
            if row and row[0]:
                events.append(self._row_to_event(row))
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        await self._run(self._sync_append, event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = await self._run(self._sync_events)
        matching = [e for e in events if e.correlation_id == correlation_id]
        return sorted(matching, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = await self._run(self._sync_events)
        matching = [
            e for e in events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(matching, key=lambda e: e.timestamp)
