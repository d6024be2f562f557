# storage/__init__.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — STORAGE MODULE
# ============================================================================
# Document store interfaces and backends
# ============================================================================

from storage.document_store import (
    AuditEventType,
    AuditLogEntry,
    DocumentStore,
    DocumentTransaction,
    IAuditLog,
    InMemoryAuditLog,
    InMemoryDocumentStore,
)

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "DocumentStore",
    "DocumentTransaction",
    "IAuditLog",
    "InMemoryAuditLog",
    "InMemoryDocumentStore",
]
