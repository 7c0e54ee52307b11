"""
Budget Control Settings

Environment-driven configuration via pydantic-settings. Two groups:

- GOOGLE_SHEETS_*  where the document store and audit log live
- BUDGET_*         naming conventions, admin remarks and boundary limits

Services receive an AppSettings instance; tests build one directly
instead of touching the environment.
"""

import warnings
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from budget_control.models.project import ANONYMOUS_DEPARTMENT_NAME, OTHER_EXPENSES_LABEL


class GoogleSheetsSettings(BaseSettings):
    """Spreadsheet backing the document store."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Service account key file used to open the spreadsheet"
    )
    spreadsheet_id: str = Field(
        ...,
        description="Spreadsheet holding projects, expenses and delegations"
    )

    # One worksheet per collection
    projects_sheet_name: str = Field(default="Projects")
    expenses_sheet_name: str = Field(default="Expenses")
    delegations_sheet_name: str = Field(default="TempApprovers")
    users_sheet_name: str = Field(default="Users")
    audit_sheet_name: str = Field(default="AuditLog")

    @field_validator('credentials_path')
    @classmethod
    def check_credentials_file(cls, v: str) -> str:
        """A missing key file is only a warning; it may be mounted at deploy time."""
        if not Path(v).exists():
            warnings.warn(f"Service account key not found at {v}")
        return v


class AppSettings(BaseSettings):
    """
    Core behaviour settings.

    Read from BUDGET_* variables and an optional .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(default="development")
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Naming conventions shared by the ledger and the migration
    anonymous_department_name: str = Field(
        default=ANONYMOUS_DEPARTMENT_NAME,
        min_length=1,
        description="Department value written onto migrated expenses"
    )
    other_expenses_label: str = Field(
        default=OTHER_EXPENSES_LABEL,
        min_length=1,
        description="Ledger bucket for expenses with no current department"
    )

    # Fixed annotations written when an admin acts on an expense
    admin_approve_remark: str = Field(default="Admin approved")
    admin_reject_remark: str = Field(default="Admin rejected")

    # Boundary behaviour
    store_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout the facade imposes on each store-backed operation"
    )
    max_conflict_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Re-reads after a version conflict before giving up"
    )
    transient_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts used by retry_transient() at the boundary"
    )

    @property
    def reserved_department_names(self) -> set[str]:
        """Names a real department may not use."""
        return {self.anonymous_department_name, self.other_expenses_label}


class Settings(BaseSettings):
    """Both settings groups behind one cached object."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Loaded on access so a missing spreadsheet config only fails Sheets users

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings. Clear with get_settings.cache_clear()."""
    return Settings()
