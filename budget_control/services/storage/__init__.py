"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Ships an in-memory backend and a Google Sheets backend; designed to be swappable.
"""

from budget_control.services.storage.interface import (
    AuditStorageInterface,
    DelegationStoreInterface,
    DocumentStore,
    ExpenseStoreInterface,
    NotFoundError,
    ProjectStoreInterface,
    StorageError,
    TransientStoreError,
    UserDirectoryInterface,
    VersionConflictError,
)
from budget_control.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
)
from budget_control.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryDocumentStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "DelegationStoreInterface",
    "DocumentStore",
    "ExpenseStoreInterface",
    "ProjectStoreInterface",
    "UserDirectoryInterface",
    # Exceptions
    "NotFoundError",
    "StorageError",
    "TransientStoreError",
    "VersionConflictError",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryDocumentStore",
]
