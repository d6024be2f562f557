"""
Document Store - Persistence Interfaces
=======================================
The data store gateway the reconciliation pipeline writes through.

Status transitions and their corroborating rows (payment record,
notification) are written inside one unit of work: the document row is
locked on read, the status update is conditional on the status observed,
and nothing becomes visible unless the whole unit commits.

Ships with in-memory implementations for tests and local runs; the
Postgres implementation lives in storage.postgres_store.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from pipeline.errors import DuplicatePaymentError
from schemas.documents import (
    Document,
    DocumentKind,
    DocumentStatus,
    InvoiceStatus,
    Notification,
    PaymentRecord,
    QuoteStatus,
    Workflow,
    utcnow,
)


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_IGNORED = "webhook.ignored"
    PAYMENT_RECONCILED = "payment.reconciled"
    PAYMENT_ALREADY_APPLIED = "payment.already_applied"
    TRANSITION_REJECTED = "transition.rejected"
    DOCUMENT_NOT_FOUND = "document.not_found"
    QUOTE_STATUS_UPDATED = "quote.status_updated"
    CHECKOUT_CREATED = "checkout.created"
    MIDTRANS_TRANSACTION_CREATED = "midtrans.transaction_created"
    REMINDERS_SENT = "reminders.sent"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "invoice", "quote", "webhook", ...
    entity_id: Optional[str] = None
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "user"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    @property
    def entries(self) -> list[AuditLogEntry]:
        return list(self._logs)


# =============================================================================
# STORE INTERFACES
# =============================================================================

class DocumentTransaction(ABC):
    """Writes staged inside one unit of work"""

    @abstractmethod
    async def lock_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        """Read the document and hold it until the unit ends"""

    @abstractmethod
    async def update_status(
        self,
        kind: DocumentKind,
        document_id: str,
        expected: DocumentStatus,
        new_status: DocumentStatus,
    ) -> Optional[Document]:
        """Compare-and-set. Returns None if the status is no longer `expected`."""

    @abstractmethod
    async def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        pass

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification:
        pass


class DocumentStore(ABC):
    """Durable storage for documents, payments and notifications"""

    backend: str = "abstract"

    @abstractmethod
    async def get_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def save_document(self, document: Document) -> Document:
        pass

    @abstractmethod
    def unit_of_work(self):
        """Async context manager yielding a DocumentTransaction"""

    @abstractmethod
    async def list_payments(self, invoice_id: Optional[str] = None) -> list[PaymentRecord]:
        pass

    @abstractmethod
    async def list_notifications(self, user_id: Optional[str] = None) -> list[Notification]:
        pass

    @abstractmethod
    async def insert_notifications(self, notifications: list[Notification]) -> int:
        pass

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        pass

    @abstractmethod
    async def list_workflow_user_ids(self, trigger_type: str) -> list[str]:
        """Owners with an active internal-notification workflow for `trigger_type`"""

    @abstractmethod
    async def list_overdue_invoices(self, user_ids: list[str], as_of: datetime) -> list[Document]:
        pass

    @abstractmethod
    async def list_expiring_quotes(
        self, user_ids: list[str], start: datetime, end: datetime
    ) -> list[Document]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryDocumentTransaction(DocumentTransaction):

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._held: list[tuple[DocumentKind, str]] = []
        self._documents: dict[tuple[DocumentKind, str], Document] = {}
        self._payments: list[PaymentRecord] = []
        self._notifications: list[Notification] = []

    async def lock_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        key = (DocumentKind(kind), document_id)
        if key not in self._held:
            lock = self._store._checkout_lock(key)
            try:
                await lock.acquire()
            except BaseException:
                self._store._return_lock(key)
                raise
            self._held.append(key)
        return self._current(key)

    def _current(self, key) -> Optional[Document]:
        if key in self._documents:
            return self._documents[key].model_copy(deep=True)
        document = self._store._documents.get(key)
        return document.model_copy(deep=True) if document else None

    async def update_status(self, kind, document_id, expected, new_status) -> Optional[Document]:
        key = (DocumentKind(kind), document_id)
        current = self._current(key)
        if current is None or current.status != expected:
            return None
        updated = current.with_status(new_status)
        self._documents[key] = updated
        return updated.model_copy(deep=True)

    async def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        self._payments.append(record)
        return record

    async def insert_notification(self, notification: Notification) -> Notification:
        self._notifications.append(notification)
        return notification

    def commit(self) -> None:
        """Apply staged writes; all or nothing"""
        store = self._store
        seen = set(store._payment_references)
        for record in self._payments:
            key = (record.gateway, record.gateway_reference)
            if key in seen:
                raise DuplicatePaymentError(
                    f"Payment {record.gateway_reference} already recorded",
                    details={"gateway": record.gateway, "reference": record.gateway_reference},
                )
            seen.add(key)

        store._documents.update(self._documents)
        for record in self._payments:
            store._payments.append(record)
            store._payment_references.add((record.gateway, record.gateway_reference))
        store._notifications.extend(self._notifications)

    def release(self) -> None:
        while self._held:
            key = self._held.pop()
            self._store._document_locks[key].release()
            self._store._return_lock(key)


class InMemoryDocumentStore(DocumentStore):
    """Lock-per-document in-memory store"""

    backend = "memory"

    def __init__(self):
        self._documents: dict[tuple[DocumentKind, str], Document] = {}
        self._payments: list[PaymentRecord] = []
        self._payment_references: set[tuple[str, str]] = set()
        self._notifications: list[Notification] = []
        self._workflows: dict[str, Workflow] = {}
        # Per-document locks live only while someone holds or awaits them
        self._document_locks: dict[tuple[DocumentKind, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[DocumentKind, str], int] = {}
        self._lock = asyncio.Lock()

    def _checkout_lock(self, key: tuple[DocumentKind, str]) -> asyncio.Lock:
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return self._document_locks.setdefault(key, asyncio.Lock())

    def _return_lock(self, key: tuple[DocumentKind, str]) -> None:
        remaining = self._lock_users[key] - 1
        if remaining:
            self._lock_users[key] = remaining
        else:
            del self._lock_users[key]
            del self._document_locks[key]

    async def get_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        async with self._lock:
            document = self._documents.get((DocumentKind(kind), document_id))
            return document.model_copy(deep=True) if document else None

    async def save_document(self, document: Document) -> Document:
        async with self._lock:
            self._documents[(document.kind, document.id)] = document.model_copy(deep=True)
            return document

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryDocumentTransaction]:
        tx = InMemoryDocumentTransaction(self)
        try:
            yield tx
            async with self._lock:
                tx.commit()
        finally:
            tx.release()

    async def list_payments(self, invoice_id: Optional[str] = None) -> list[PaymentRecord]:
        async with self._lock:
            return [p for p in self._payments if invoice_id is None or p.invoice_id == invoice_id]

    async def list_notifications(self, user_id: Optional[str] = None) -> list[Notification]:
        async with self._lock:
            return [n for n in self._notifications if user_id is None or n.user_id == user_id]

    async def insert_notifications(self, notifications: list[Notification]) -> int:
        async with self._lock:
            self._notifications.extend(notifications)
            return len(notifications)

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            self._workflows[workflow.id] = workflow
            return workflow

    async def list_workflow_user_ids(self, trigger_type: str) -> list[str]:
        async with self._lock:
            return sorted({
                w.user_id for w in self._workflows.values()
                if w.is_active
                and w.trigger_type == trigger_type
                and w.action_type == "send_internal_notification"
            })

    async def list_overdue_invoices(self, user_ids: list[str], as_of: datetime) -> list[Document]:
        async with self._lock:
            return [
                d.model_copy(deep=True) for (kind, _), d in self._documents.items()
                if kind == DocumentKind.INVOICE
                and d.user_id in user_ids
                and d.status != InvoiceStatus.PAID
                and d.due_date is not None
                and d.due_date < as_of
            ]

    async def list_expiring_quotes(
        self, user_ids: list[str], start: datetime, end: datetime
    ) -> list[Document]:
        async with self._lock:
            return [
                d.model_copy(deep=True) for (kind, _), d in self._documents.items()
                if kind == DocumentKind.QUOTE
                and d.user_id in user_ids
                and d.status == QuoteStatus.PENDING
                and d.valid_until is not None
                and start <= d.valid_until <= end
            ]
